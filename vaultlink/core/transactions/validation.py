"""
Intent validation.

Structural checks come from the pydantic model; limits that depend on
configuration (amount ceiling, recipient format, memo size) are checked
here. Any failure becomes a single invalid_request carrying every message.
"""

import re
from typing import Any, List, Mapping, Optional, Union

from pydantic import ValidationError

from ...config import Settings, settings as default_settings
from ..recovery.errors import ClassifiedError, invalid_request
from .models import TransactionIntent


IntentLike = Union[TransactionIntent, Mapping[str, Any]]


def _format_pydantic_errors(error: ValidationError) -> List[str]:
    messages = []
    for item in error.errors():
        location = ".".join(str(part) for part in item.get("loc", ())) or "intent"
        message = item.get("msg", "invalid value")
        # pydantic prefixes messages from custom validators
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        messages.append(f"{location}: {message}")
    return messages


def validate_intent(intent: IntentLike, settings: Optional[Settings] = None) -> TransactionIntent:
    """
    Parse and check an intent.

    Raises:
        ClassifiedError(invalid_request): with details["errors"] listing each problem
    """
    settings = settings or default_settings

    if isinstance(intent, TransactionIntent):
        parsed = intent
    else:
        try:
            parsed = TransactionIntent.model_validate(dict(intent))
        except ValidationError as e:
            raise _invalid(_format_pydantic_errors(e), e)
        except (TypeError, ValueError) as e:
            raise _invalid([f"intent: expected a mapping of fields ({e})"], e)

    errors: List[str] = []

    if parsed.amount > settings.max_transaction_amount:
        errors.append(f"amount: Amount exceeds the maximum of {settings.max_transaction_amount}")

    if not re.match(settings.recipient_pattern, parsed.recipient):
        errors.append("recipient: Invalid recipient address format")

    if len(parsed.memo.encode("utf-8")) > settings.max_memo_bytes:
        errors.append(f"memo: Memo exceeds {settings.max_memo_bytes} bytes")

    if errors:
        raise _invalid(errors)

    return parsed


def _invalid(errors: List[str], raw: Optional[BaseException] = None) -> ClassifiedError:
    return invalid_request("; ".join(errors), raw=raw, details={"errors": errors})
