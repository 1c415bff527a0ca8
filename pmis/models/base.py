"""
Shared column helpers for the state-machine models.

Every status field is a closed ``enum.Enum``. ``enum_column`` maps it onto
a VARCHAR column holding the member *value* (e.g. ``"in_progress"``), so the
stored data stays readable and portable across SQLite and PostgreSQL while
attribute access always yields the enum member.
"""

import enum

from pmis.models import db


class StrEnum(str, enum.Enum):
    """Enum whose members compare equal to their string value."""

    def __str__(self):
        return self.value


def enum_column(enum_cls, default=None, **kwargs):
    """Return a ``db.Column`` storing ``enum_cls`` values as strings."""
    column_type = db.Enum(
        enum_cls,
        values_callable=lambda members: [m.value for m in members],
        native_enum=False,
        validate_strings=True,
        length=32,
        name=f"{enum_cls.__name__.lower()}_enum",
    )
    kwargs.setdefault("nullable", False)
    return db.Column(column_type, default=default, **kwargs)
