import re
from datetime import date, datetime, time, timezone
from typing import Optional, Union

from libsync.errors import ValidationError
from libsync.models import as_utc

_IDENTIFIER_RE = re.compile(r"^[A-Z0-9][A-Z0-9/_.\-]*$")


class IdentifierValidator:
    """Accession numbers and student codes: trimmed, upper-cased, no spaces."""

    @staticmethod
    def normalize(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return re.sub(r"\s+", "", str(raw)).upper()

    @staticmethod
    def is_valid(value: Optional[str]) -> bool:
        s = IdentifierValidator.normalize(value)
        return bool(s) and len(s) <= 64 and bool(_IDENTIFIER_RE.match(s))

    @staticmethod
    def require(raw: Optional[str], field: str) -> str:
        s = IdentifierValidator.normalize(raw)
        if not IdentifierValidator.is_valid(s):
            raise ValidationError(f"Invalid {field}: {raw!r}")
        return s


class TextValidator:
    @staticmethod
    def require(text: Optional[str], field: str) -> str:
        if text is None or not str(text).strip():
            raise ValidationError(f"{field} is required.")
        return str(text).strip()

    @staticmethod
    def optional(text: Optional[str]) -> Optional[str]:
        if text is None:
            return None
        t = str(text).strip()
        return t or None


def require_ref(ref: Optional[str], field: str) -> str:
    """A lookup reference (internal id, code or accession number) must not be blank."""
    if ref is None or not str(ref).strip():
        raise ValidationError(f"{field} is required.")
    return str(ref).strip()


class DateValidator:
    @staticmethod
    def parse_datetime(value: Union[str, date, datetime, None], field: str = "date") -> Optional[datetime]:
        """Parse an ISO date or datetime into an aware UTC datetime.

        A bare date means midnight UTC of that day; naive datetimes are UTC.
        """
        if value is None or value == "":
            return None
        if isinstance(value, datetime):
            return as_utc(value)
        if isinstance(value, date):
            return datetime.combine(value, time.min, tzinfo=timezone.utc)
        raw = str(value).strip()
        try:
            if len(raw) == 10:
                return datetime.combine(date.fromisoformat(raw), time.min, tzinfo=timezone.utc)
            # fromisoformat before 3.11 does not accept a trailing 'Z'
            if raw.endswith(("Z", "z")):
                raw = raw[:-1] + "+00:00"
            return as_utc(datetime.fromisoformat(raw))
        except ValueError as e:
            raise ValidationError(f"Invalid {field}: {value!r}") from e
