"""
Keyed checksum verification for collar telemetry.

Collars sign each report with djb2 over the report JSON followed by a shared
key. This is an integrity tag, not a cryptographic MAC: it stops casual
spoofing and corrupted payloads, nothing more.

The signed message is the payload with ``signature`` removed, serialized the
way ``JSON.stringify`` writes it: compact, in received key order, with
non-ASCII characters kept as-is. Numbers follow JavaScript formatting, so
``3.0`` is written ``3``, ``0.00005`` stays in fixed notation and ``1e-7``
has no zero-padded exponent. The message and key are hashed as UTF-8.
"""

import json
import logging
import math
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

SIGNATURE_FIELD = "signature"
DJB2_SEED = 5381
_MASK_32 = 0xFFFFFFFF

# JavaScript switches to exponent notation outside [1e-6, 1e21)
_JS_MAX_FIXED_EXPONENT = 21
_JS_MIN_FIXED_EXPONENT = -6


def djb2(data: bytes, seed: int = DJB2_SEED) -> int:
    """Unsigned 32-bit djb2: ``h = h * 33 + byte``."""
    h = seed
    for byte in data:
        h = ((h << 5) + h + byte) & _MASK_32
    return h


def format_js_number(value: float) -> str:
    """
    Write a float the way JavaScript's ``Number.prototype.toString`` does.

    Python's repr already yields the shortest round-tripping digits; only the
    placement of the decimal point and the exponent style differ.
    """
    if not math.isfinite(value):
        return "null"
    if value == 0:
        return "0"

    sign = "-" if value < 0 else ""
    mantissa, _, exponent = repr(abs(value)).partition("e")
    whole, _, fraction = mantissa.partition(".")
    digits = whole + fraction
    # value == 0.<digits> * 10 ** point
    point = len(whole) + int(exponent or 0)
    stripped = digits.lstrip("0")
    point -= len(digits) - len(stripped)
    digits = stripped.rstrip("0")
    k = len(digits)

    if k <= point <= _JS_MAX_FIXED_EXPONENT:
        text = digits + "0" * (point - k)
    elif 0 < point <= _JS_MAX_FIXED_EXPONENT:
        text = digits[:point] + "." + digits[point:]
    elif _JS_MIN_FIXED_EXPONENT < point <= 0:
        text = "0." + "0" * -point + digits
    else:
        e = point - 1
        coefficient = digits if k == 1 else digits[0] + "." + digits[1:]
        text = f"{coefficient}e{'+' if e >= 0 else '-'}{abs(e)}"
    return sign + text


def _to_js_json(value: Any) -> str:
    if isinstance(value, float):
        return format_js_number(value)
    if isinstance(value, dict):
        members = (
            json.dumps(str(k), ensure_ascii=False) + ":" + _to_js_json(v)
            for k, v in value.items()
        )
        return "{" + ",".join(members) + "}"
    if isinstance(value, (list, tuple)):
        return "[" + ",".join(_to_js_json(v) for v in value) + "]"
    return json.dumps(value, ensure_ascii=False)


def canonical_message(payload: Dict[str, Any]) -> str:
    """Build the exact string a collar signs for ``payload``."""
    unsigned = {k: v for k, v in payload.items() if k != SIGNATURE_FIELD}
    return _to_js_json(unsigned)


def compute_signature(payload: Dict[str, Any], key: str) -> int:
    digest = djb2(canonical_message(payload).encode("utf-8"))
    return djb2(key.encode("utf-8"), seed=digest)


def parse_signature(value: Any) -> Optional[int]:
    """
    Parse a provided signature into an integer.

    Accepts ints, decimal strings and ``0x`` hex strings. Returns None for
    anything else, including booleans and negative values.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value >= 0 else None
    if isinstance(value, float):
        if value.is_integer() and value >= 0:
            return int(value)
        return None
    if not isinstance(value, str):
        return None

    text = value.strip()
    try:
        if text.lower().startswith("0x"):
            parsed = int(text[2:], 16)
        elif text.isdigit():
            parsed = int(text, 10)
        else:
            return None
    except ValueError:
        return None
    return parsed


def verify_signature(payload: Dict[str, Any], provided_signature: Any, key: Optional[str]) -> bool:
    """
    Check a collar-provided signature.

    With no key configured every payload passes. With a key configured a
    missing or unparsable signature fails.
    """
    if not key:
        return True

    if provided_signature is None or provided_signature == "":
        logger.warning("Telemetry rejected: no signature provided")
        return False

    provided = parse_signature(provided_signature)
    expected = compute_signature(payload, key)

    if provided != expected:
        logger.warning(
            "Telemetry rejected: signature mismatch",
            extra={"extra_data": {
                "expected_signature": expected,
                "provided_signature": str(provided_signature),
            }}
        )
        return False
    return True


class SignatureVerifier:
    """
    Verifies telemetry reports against the configured signing key.

    Attributes:
        enabled: False when no signing key is configured
    """

    def __init__(self, key: Optional[str]):
        self._key = key or None
        if not self._key:
            logger.warning("SIGNING_KEY not configured - telemetry signatures are not verified")

    @property
    def enabled(self) -> bool:
        return self._key is not None

    def verify(self, payload: Dict[str, Any]) -> bool:
        return verify_signature(payload, payload.get(SIGNATURE_FIELD), self._key)
