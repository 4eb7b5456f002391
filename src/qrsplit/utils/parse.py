from __future__ import annotations

import json
import math
import re
from typing import Any, Iterable, Optional, Union

from qrsplit.logging import get_logger

log = get_logger(__name__)

NUMERAL = re.compile(r"-?[0-9]+(?:\.[0-9]+)?")


def normalize_amount(value: Union[str, int, float, None]) -> float:
    """
    Convert a user supplied amount into a float.

    Handles both locale conventions seen on receipts:
    - "10,99" and "2.000,50": comma is the decimal point, dots group thousands
    - "1.234.567" and "2.000": dots group thousands
    - "12.50": a dot followed by exactly two digits is the decimal point

    Unparseable input yields 0.0.
    """
    if value is None:
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0

    raw = str(value).strip()
    text = raw

    if "," in text:
        head, _, tail = text.replace(".", "").rpartition(",")
        text = f"{head.replace(',', '')}.{tail}"
        log.debug("amount.comma_decimal", raw=raw, converted=text)
    elif "." in text:
        digits_after_dot = len(text) - text.rfind(".") - 1
        if digits_after_dot == 2:
            log.debug("amount.dot_decimal", raw=raw, converted=text)
        else:
            text = text.replace(".", "")
            log.debug("amount.dot_thousands", raw=raw, converted=text)

    if not NUMERAL.fullmatch(text):
        log.debug("amount.unparseable", raw=raw)
        return 0.0

    result = float(text)

    if not math.isfinite(result):
        return 0.0
    log.debug("amount.normalized", raw=raw, result=result)
    return result


def normalize_wallet(value: Any) -> Optional[str]:
    if value is None:
        return None
    wallet = str(value).strip().lower()
    return wallet or None


def parse_assignees(raw: Any) -> frozenset[str]:
    """Decode stored assignees, which may be a list or a JSON encoded list."""
    if raw is None:
        return frozenset()
    if isinstance(raw, (list, tuple, set, frozenset)):
        return frozenset(str(value) for value in raw if value is not None)
    try:
        decoded = json.loads(raw)
    except (TypeError, ValueError):
        return frozenset()
    if not isinstance(decoded, list):
        return frozenset()
    return frozenset(str(value) for value in decoded if value is not None)


def dump_assignees(assignees: Iterable[str]) -> str:
    return json.dumps(sorted(assignees))
