"""Webhook payload parsing and relayed-token decoding.

Entu webhook format: { db, plugin, user: { _id, email }, entity: { _id }, token }

The token is the JWT of the person whose edit triggered the webhook. It is
decoded locally to read identity claims only; its signature is not checked
here; Entu relays it and Entu rejects it on every API call once it has expired.
A signature check can be plugged in through the ``verify`` argument.
"""
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import jwt

from entu_sync.errors import MalformedPayload, MissingCredential
from entu_sync.logging_conf import logger

SENSITIVE_FIELDS = ("token", "api_key", "apiKey", "secret", "password")


@dataclass(frozen=True)
class TokenContext:
    """Everything a reconciliation pass needs from one notification."""

    entity_id: str
    token: str
    subject_id: Optional[str] = None
    subject_label: Optional[str] = None
    expires_at: Optional[datetime] = None
    database: Optional[str] = None
    received_at: float = 0.0

    @property
    def is_expired(self) -> bool:
        return self.expires_at is not None and self.expires_at <= datetime.now(timezone.utc)


def extract_entity_id(payload: Dict[str, Any]) -> Optional[str]:
    """Return ``entity._id`` from the payload, or None."""
    entity = payload.get("entity")
    if not isinstance(entity, dict):
        return None
    entity_id = entity.get("_id")
    if entity_id is None:
        return None
    entity_id = str(entity_id).strip()
    return entity_id or None


def decode_token_claims(token: str) -> Dict[str, Any]:
    """Decode JWT claims without verifying the signature or expiry."""
    try:
        claims = jwt.decode(
            token,
            options={"verify_signature": False, "verify_exp": False},
            algorithms=["HS256", "RS256", "ES256"],
        )
    except jwt.PyJWTError as e:
        raise MissingCredential(f"Token is not a well-formed JWT: {e}") from e
    if not isinstance(claims, dict):
        raise MissingCredential("Token claims must be an object")
    return claims


def _claim_subject(claims: Dict[str, Any]) -> Optional[str]:
    user = claims.get("user")
    if isinstance(user, dict):
        user = user.get("_id")
    return str(user) if user else None


def _claim_expiry(claims: Dict[str, Any]) -> Optional[datetime]:
    exp = claims.get("exp")
    if isinstance(exp, (int, float)) and not isinstance(exp, bool):
        return datetime.fromtimestamp(exp, tz=timezone.utc)
    return None


def extract_token_context(
    payload: Any,
    verify: Optional[Callable[[str], None]] = None,
) -> TokenContext:
    """
    Validate a webhook payload and pull out the entity id and caller identity.

    Args:
        payload: Decoded JSON body of the webhook
        verify: Optional signature check; receives the raw token and raises
            ``Unauthorized`` to reject it

    Returns:
        TokenContext for the notification

    Raises:
        MalformedPayload: payload is not an object or has no entity id
        MissingCredential: no token, or the token is not a JWT
    """
    if not isinstance(payload, dict):
        raise MalformedPayload("Payload must be an object")

    entity_id = extract_entity_id(payload)
    if not entity_id:
        raise MalformedPayload("Missing entity._id in payload")

    token = payload.get("token")
    if not isinstance(token, str) or not token.strip():
        raise MissingCredential("Missing user authentication token in payload")
    token = token.strip()

    claims = decode_token_claims(token)
    if verify is not None:
        verify(token)

    user = payload.get("user") if isinstance(payload.get("user"), dict) else {}
    subject_id = _claim_subject(claims) or (str(user["_id"]) if user.get("_id") else None)
    subject_label = claims.get("email") or claims.get("name") or user.get("email")
    expires_at = _claim_expiry(claims)

    context = TokenContext(
        entity_id=entity_id,
        token=token,
        subject_id=subject_id,
        subject_label=subject_label,
        expires_at=expires_at,
        database=payload.get("db"),
        received_at=time.time(),
    )

    if context.is_expired:
        logger.warning(
            f"Relayed token for entity {entity_id} already expired at {expires_at.isoformat()}",
            extra={"entity_id": entity_id, "subject_id": subject_id},
        )

    return context


def sanitize_payload_for_logging(payload: Any) -> Any:
    """Shallow copy of the payload with credentials redacted."""
    if not isinstance(payload, dict):
        return payload

    sanitized = dict(payload)
    for field in SENSITIVE_FIELDS:
        if sanitized.get(field):
            sanitized[field] = "***REDACTED***"
    return sanitized
