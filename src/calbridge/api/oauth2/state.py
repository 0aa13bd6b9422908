# Upstream state-parameter codec.
# Created: 2026-10-07
#
# The upstream provider's ``state`` is a shared channel: the broker's own
# envelope travels through it, but so may values minted elsewhere. Anything
# that does not decode to our envelope is "not ours", never an exception.

from __future__ import annotations

import base64
import json

from calbridge.api.oauth2.models import AUTH_STATE_TYPE, StateEnvelope
from calbridge.integrations.token_store import DEFAULT_ACCOUNT


def encode_state(session_id: str, account: str) -> str:
    """Encode a state envelope as unpadded base64url JSON."""
    payload = StateEnvelope(session_id=session_id, account=account).to_wire()
    raw = json.dumps(payload, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def parse_state(raw: str | None) -> StateEnvelope | None:
    """Decode *raw* into a StateEnvelope, or return None if it is not ours."""
    if not raw:
        return None

    try:
        padded = raw + "=" * (-len(raw) % 4)
        decoded = base64.b64decode(padded, altchars=b"-_", validate=True)
        data = json.loads(decoded)
    except ValueError:
        # binascii.Error, UnicodeDecodeError and JSONDecodeError are all ValueErrors
        return None

    if not isinstance(data, dict) or data.get("type") != AUTH_STATE_TYPE:
        return None

    session_id = data.get("sessionId")
    if not isinstance(session_id, str) or not session_id:
        return None

    account = data.get("account")
    if not isinstance(account, str) or not account:
        account = DEFAULT_ACCOUNT

    return StateEnvelope(session_id=session_id, account=account)
