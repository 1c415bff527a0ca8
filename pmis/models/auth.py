"""
Identity models: users, roles, user-role assignments.

The work-approval core only reads these: role names and the active flag
drive assignment policy and role-targeted routing. User administration
lives outside this service.
"""

from pmis.models import db
from pmis.utils.helpers import iso, utcnow

# ── Role names ───────────────────────────────────────────────────────────────

PMU_ADMIN = "PMU_ADMIN"
PMU_STAFF = "PMU_STAFF"
ACCOUNTANT = "ACCOUNTANT"
WORLD_BANK = "WORLD_BANK"
CONTRACTOR = "CONTRACTOR"


class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=True, index=True)
    full_name = db.Column(db.String(200))
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow)

    user_roles = db.relationship(
        "UserRole", back_populates="user", lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def role_names(self):
        """Set of role names held by this user."""
        return {ur.role.name for ur in self.user_roles}

    def has_role(self, name):
        return name in self.role_names

    def to_dict(self, include_roles=False):
        d = {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "is_active": self.is_active,
            "created_at": iso(self.created_at),
        }
        if include_roles:
            d["roles"] = sorted(self.role_names)
        return d

    def __repr__(self):
        return f"<User {self.id}: {self.full_name or self.email}>"


class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), unique=True, nullable=False)
    display_name = db.Column(db.String(200))

    user_roles = db.relationship("UserRole", back_populates="role", lazy="dynamic")

    def to_dict(self):
        return {"id": self.id, "name": self.name, "display_name": self.display_name}

    def __repr__(self):
        return f"<Role {self.name}>"


class UserRole(db.Model):
    __tablename__ = "user_roles"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False
    )
    assigned_at = db.Column(db.DateTime, default=utcnow)

    __table_args__ = (
        db.UniqueConstraint("user_id", "role_id", name="uq_user_role"),
    )

    user = db.relationship("User", back_populates="user_roles")
    role = db.relationship("Role", back_populates="user_roles", lazy="joined")
