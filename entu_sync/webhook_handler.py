"""Webhook request handling: auth, rate limit, debounce and the reprocessing loop."""
import hashlib
import hmac
import json
import time
from typing import Any, Callable, Dict, Mapping, Optional

from entu_sync import settings
from entu_sync.errors import (
    InternalError,
    MalformedPayload,
    TooManyRequests,
    Unauthorized,
    WebhookError,
)
from entu_sync.logging_conf import logger
from entu_sync.queue.debounce_queue import DebounceQueue
from entu_sync.rate_limiter import RateLimiter
from entu_sync.token_context import extract_token_context, sanitize_payload_for_logging

# (entity_id, token) -> summary of one reconciliation pass
SyncPass = Callable[[str, Optional[str]], Dict[str, Any]]


def verify_webhook_request(body: bytes, headers: Mapping[str, str], secret: Optional[str]) -> bool:
    """
    Check that the request comes from the configured webhook sender.

    Accepts either ``x-webhook-token`` equal to the shared secret or
    ``x-webhook-signature`` holding the hex HMAC-SHA256 of the raw body.
    Without a configured secret every request is accepted.
    """
    if not secret:
        logger.warning("WEBHOOK_SECRET not configured - webhook validation disabled")
        return True

    headers = {k.lower(): v for k, v in headers.items()}
    token = headers.get("x-webhook-token")
    signature = headers.get("x-webhook-signature")

    if not token and not signature:
        logger.warning("Webhook request missing authentication headers")
        return False

    if token and hmac.compare_digest(token.encode(), secret.encode()):
        return True

    if signature:
        if signature.startswith("sha256="):
            signature = signature[len("sha256="):]
        expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
        if hmac.compare_digest(signature.lower(), expected):
            return True

    logger.warning("Webhook authentication failed")
    return False


class WebhookHandler:
    """Handles one webhook endpoint for a single propagation direction."""

    def __init__(
        self,
        name: str,
        sync_pass: SyncPass,
        queue: DebounceQueue,
        rate_limiter: RateLimiter,
        secret: Optional[str] = None,
        settle_interval: Optional[float] = None,
        max_passes: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.name = name
        self.sync_pass = sync_pass
        self.queue = queue
        self.rate_limiter = rate_limiter
        self.secret = secret
        self.settle_interval = settle_interval if settle_interval is not None else settings.SETTLE_INTERVAL_SECONDS
        self.max_passes = max_passes if max_passes is not None else settings.MAX_REPROCESS_PASSES
        self._sleep = sleep

    def handle(self, body: bytes, headers: Mapping[str, str]) -> Dict[str, Any]:
        """
        Process one webhook call.

        Returns:
            Summary of the last reconciliation pass, or a ``queued`` response
            when the entity is already being processed

        Raises:
            WebhookError: with the HTTP status to answer
        """
        start_time = time.monotonic()
        logger.info(f"Webhook received: {self.name}")

        try:
            # 1. Rate limiting
            if not self.rate_limiter.allow():
                raise TooManyRequests("Too many requests")

            # 2. Validate webhook authenticity
            if not verify_webhook_request(body, headers, self.secret):
                raise Unauthorized("Unauthorized webhook request")

            # 3. Read payload and extract entity id and user token
            payload = self._parse_body(body)
            logger.debug(f"Webhook payload: {sanitize_payload_for_logging(payload)}")
            context = extract_token_context(payload)
            entity_id = context.entity_id
            logger.info(f"Webhook for entity {entity_id} initiated by user {context.subject_id} ({context.subject_label})")

            # 4. Debounce if already processing
            if not self.queue.enqueue(entity_id, context.token):
                logger.info(f"Entity {entity_id} already queued - webhook will be reprocessed")
                return {
                    "success": True,
                    "message": "Webhook queued for reprocessing",
                    "entity_id": entity_id,
                    "queued": True,
                }

            # 5. Process, repeating while the entity was edited mid-pass
            result = self._process(entity_id, context.token)
            result["duration_ms"] = int((time.monotonic() - start_time) * 1000)
            return result

        except WebhookError as e:
            logger.error(
                f"Webhook processing failed: {e.message} (status {e.status_code}, "
                f"{int((time.monotonic() - start_time) * 1000)}ms)"
            )
            raise
        except Exception as e:
            logger.error(f"Unexpected error processing {self.name} webhook: {e}", exc_info=True)
            raise InternalError("Internal server error processing webhook") from e

    def _process(self, entity_id: str, token: str) -> Dict[str, Any]:
        passes = 0
        try:
            while True:
                result = self.sync_pass(entity_id, token)
                passes += 1

                if not self.queue.complete(entity_id):
                    break

                if passes >= self.max_passes:
                    logger.warning(
                        f"Entity {entity_id} still being edited after {passes} passes - stopping reprocessing"
                    )
                    self.queue.release(entity_id)
                    result["reprocess_limit_reached"] = True
                    break

                logger.info(f"Reprocessing entity {entity_id} - was edited during processing")
                token = self.queue.latest_token(entity_id) or token
                # Let a burst of edits settle before recomputing
                self._sleep(self.settle_interval)
        except BaseException:
            self.queue.release(entity_id)
            raise

        result["passes"] = passes
        return result

    @staticmethod
    def _parse_body(body: bytes) -> Any:
        if not body:
            raise MalformedPayload("Empty request body")
        try:
            return json.loads(body)
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedPayload(f"Invalid JSON payload: {e}") from e
