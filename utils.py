from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Iterable, Mapping, Optional, Sequence, Union

Path = Union[str, Sequence[str]]

_MISSING = object()


def _dig(obj: Any, path: Path) -> Any:
    keys = path.split(".") if isinstance(path, str) else path
    cur = obj
    for key in keys:
        if not isinstance(cur, Mapping) or key not in cur:
            return _MISSING
        cur = cur[key]
    return cur


def first_of(obj: Any, paths: Iterable[Path], default: Optional[Any] = None) -> Any:
    """
    Return the first present, non-empty value found at any of `paths`.

    PhonePe has moved fields around between API versions, so the same value
    may live at `redirectUrl`, `data.redirectUrl` or `response.redirectUrl`:

        first_of(body, ("redirectUrl", "data.redirectUrl", "response.redirectUrl"))
    """
    for path in paths:
        value = _dig(obj, path)
        if value is _MISSING or value is None or value == "":
            continue
        return value
    return default


def to_minor_units(amount: Any) -> int:
    """Rupees -> paise, rounding half up instead of truncating."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise ValueError(f"amount must be numeric, got {amount!r}")
    if not value.is_finite():
        raise ValueError(f"amount must be finite, got {amount!r}")
    try:
        return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    except ArithmeticError:
        # quantize signals InvalidOperation once the paise value outgrows the context precision
        raise ValueError(f"amount is out of range, got {amount!r}")


def from_minor_units(amount_minor: int) -> Decimal:
    return (Decimal(int(amount_minor)) / 100).quantize(Decimal("0.01"))
