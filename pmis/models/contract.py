"""
Contract models: the read-mostly collaborators of the approval core.

Models:
    - Contractor: the company performing the work
    - Contract: base amount and the two people responsible for it
      (curator and project manager) used to route approval tasks
    - ContractMilestone: scheduled sub-deadline; flipped to Overdue
      by the deadline scanner only
"""

from pmis.models import db
from pmis.models.base import StrEnum, enum_column
from pmis.utils.helpers import iso, utcnow


class MilestoneStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    OVERDUE = "overdue"


class Contractor(db.Model):
    __tablename__ = "contractors"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(300), nullable=False)
    tax_id = db.Column(db.String(50))
    created_at = db.Column(db.DateTime, default=utcnow)

    def to_dict(self):
        return {"id": self.id, "name": self.name, "tax_id": self.tax_id}

    def __repr__(self):
        return f"<Contractor {self.id}: {self.name}>"


class Contract(db.Model):
    __tablename__ = "contracts"

    id = db.Column(db.Integer, primary_key=True)
    contract_number = db.Column(db.String(100), unique=True, nullable=False)
    work_description = db.Column(db.Text, default="")
    contractor_id = db.Column(
        db.Integer, db.ForeignKey("contractors.id", ondelete="RESTRICT"), nullable=False
    )
    contract_amount = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    currency = db.Column(db.String(3), default="USD")
    project_id = db.Column(db.Integer, nullable=True, index=True)
    curator_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    project_manager_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    signing_date = db.Column(db.Date, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    contractor = db.relationship("Contractor", lazy="joined")
    curator = db.relationship("User", foreign_keys=[curator_id])
    project_manager = db.relationship("User", foreign_keys=[project_manager_id])
    milestones = db.relationship(
        "ContractMilestone", back_populates="contract",
        cascade="all, delete-orphan", order_by="ContractMilestone.due_date",
    )

    def to_dict(self):
        return {
            "id": self.id,
            "contract_number": self.contract_number,
            "contractor": self.contractor.name if self.contractor else None,
            "contract_amount": str(self.contract_amount),
            "currency": self.currency,
            "project_id": self.project_id,
            "curator_id": self.curator_id,
            "project_manager_id": self.project_manager_id,
        }

    def __repr__(self):
        return f"<Contract {self.contract_number}>"


class ContractMilestone(db.Model):
    __tablename__ = "contract_milestones"

    id = db.Column(db.Integer, primary_key=True)
    contract_id = db.Column(
        db.Integer, db.ForeignKey("contracts.id", ondelete="CASCADE"), nullable=False, index=True
    )
    title = db.Column(db.String(300), nullable=False)
    description = db.Column(db.Text, default="")
    due_date = db.Column(db.DateTime, nullable=False, index=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    status = enum_column(MilestoneStatus, default=MilestoneStatus.PENDING)
    created_at = db.Column(db.DateTime, default=utcnow)

    contract = db.relationship("Contract", back_populates="milestones")

    def to_dict(self):
        return {
            "id": self.id,
            "contract_id": self.contract_id,
            "title": self.title,
            "due_date": iso(self.due_date),
            "completed_at": iso(self.completed_at),
            "status": self.status.value,
        }

    def __repr__(self):
        return f"<ContractMilestone {self.id}: {self.title} [{self.status}]>"
