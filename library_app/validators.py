import math
import re
from typing import Any, Optional

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+$")


class EmailValidator:
    """Normalization for login e-mails: trimmed and lower-cased."""

    @staticmethod
    def normalize(raw: Optional[str]) -> str:
        if raw is None:
            return ""
        return str(raw).strip().lower()

    @staticmethod
    def looks_valid(email: str) -> bool:
        return bool(_EMAIL_RE.match(email or ""))


class TextValidator:
    """Basic checks for free-text fields."""

    @staticmethod
    def clean(text: Any) -> str:
        if text is None:
            return ""
        return str(text).strip()

    @staticmethod
    def required(text: Any, field_name: str) -> str:
        cleaned = TextValidator.clean(text)
        if not cleaned:
            raise ValueError(f"{field_name} is required")
        return cleaned


class NumberValidator:
    """Coercions for quantities, stock and prices coming from JSON bodies."""

    @staticmethod
    def positive_int(value: Any, field_name: str = "quantity", default: int = 1,
                     maximum: Optional[int] = None) -> int:
        """Truncate ``value`` to an int and require it to be > 0 (and <= maximum)."""
        if value is None:
            value = default
        if isinstance(value, bool):
            raise ValueError(f"invalid {field_name}")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise ValueError(f"invalid {field_name}") from None
        if not math.isfinite(number):
            raise ValueError(f"invalid {field_name}")
        result = int(number)
        if result <= 0:
            raise ValueError(f"invalid {field_name}")
        if maximum is not None and result > maximum:
            raise ValueError(f"maximum {field_name}: {maximum}")
        return result

    @staticmethod
    def stock(value: Any) -> int:
        """Stock counts never go negative; garbage counts as zero."""
        try:
            number = float(value)
        except (TypeError, ValueError):
            return 0
        if not math.isfinite(number):
            return 0
        return max(int(number), 0)

    @staticmethod
    def price(value: Any) -> Optional[float]:
        """Return a finite float, or None when ``value`` is not a usable price."""
        if value is None or isinstance(value, bool):
            return None
        try:
            number = float(value)
        except (TypeError, ValueError):
            return None
        return number if math.isfinite(number) else None
