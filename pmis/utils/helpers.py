"""Shared helpers for timestamps and request input parsing.

utcnow:           naive UTC "now", the representation every DateTime column stores
parse_datetime:   ISO / DD.MM.YYYY request input -> naive UTC datetime (None on bad input)
iso:              datetime | None -> ISO string | None for to_dict()
atomic:           commit-or-rollback block used by every mutating service operation
get_or_raise:     primary-key lookup raising NotFoundError
request_actor_id: acting user id of the current request
"""
from contextlib import contextmanager
from datetime import date, datetime, timezone

from flask import request

from pmis.core.exceptions import NotFoundError
from pmis.models import db


def utcnow():
    """Return the current UTC time without tzinfo.

    SQLite drops tzinfo on read, so all persisted timestamps are naive UTC
    and every comparison in the services uses this helper.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def parse_datetime(value):
    """Parse an ISO datetime, ISO date or DD.MM.YYYY string.

    Aware datetimes are converted to naive UTC. Returns None for empty or
    invalid input.
    """
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except (ValueError, TypeError):
            try:
                parsed = datetime.strptime(text, "%d.%m.%Y")
            except (ValueError, TypeError):
                return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def iso(value):
    return value.isoformat() if value else None


@contextmanager
def atomic(commit=True):
    """Commit on success; roll back and re-raise on any error.

    With ``commit=False`` the block joins the caller's transaction and
    neither commits nor rolls back.
    """
    if not commit:
        yield
        return
    try:
        yield
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def get_or_raise(model, pk, label=None):
    """Fetch a model instance by primary key or raise NotFoundError."""
    obj = db.session.get(model, pk) if pk is not None else None
    if obj is None:
        raise NotFoundError(resource=label or model.__name__, resource_id=pk)
    return obj


def request_actor_id():
    """Acting user id from the X-User-Id header or ``actor_id`` in the JSON body."""
    raw = request.headers.get("X-User-Id")
    if raw is None:
        raw = (request.get_json(silent=True) or {}).get("actor_id")
    try:
        return int(raw) if raw not in (None, "") else None
    except (TypeError, ValueError):
        return None
