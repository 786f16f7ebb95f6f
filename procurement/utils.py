import uuid
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.utils import timezone
from django.utils.dateparse import parse_datetime

HUNDRED = Decimal('100')
SCORE_PLACES = Decimal('0.0001')


def as_decimal(value):
    """Coerce request input to Decimal; None when it is not a finite number"""
    if value is None or isinstance(value, bool):
        return None
    try:
        # floats go through str so 5.5 becomes Decimal('5.5'), not its binary expansion
        number = Decimal(str(value)) if isinstance(value, float) else Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        return None
    return number if number.is_finite() else None


def as_uuid(value):
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError, AttributeError):
        return None


def as_datetime(value):
    """Parse an ISO timestamp; naive values are taken in the current timezone"""
    if value in (None, ''):
        return None
    if hasattr(value, 'tzinfo'):
        parsed = value
    else:
        try:
            parsed = parse_datetime(str(value))
        except ValueError:
            return None
        if parsed is None:
            return None
    if timezone.is_naive(parsed):
        parsed = timezone.make_aware(parsed)
    return parsed


def quantize_score(value):
    return Decimal(value).quantize(SCORE_PLACES, rounding=ROUND_HALF_UP)


def mean(values):
    values = list(values)
    if not values:
        return Decimal('0')
    return sum(values, Decimal('0')) / len(values)
