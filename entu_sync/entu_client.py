"""Entu API client for reading entities and granting access rights.

Every call is made with the token relayed by the webhook, so Entu attributes
the resulting rights changes to the person who made the edit rather than to
a service account.
"""
import time
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, List, Iterable, Tuple
from urllib.parse import quote

import requests

from entu_sync import settings
from entu_sync.errors import RemoteError, Unauthorized
from entu_sync.logging_conf import logger

# Entu entity type names
TYPE_PERSON = "person"
TYPE_GROUP = "grupp"
TYPE_TASK = "ulesanne"

KIND_BY_TYPE = {
    TYPE_PERSON: "person",
    TYPE_GROUP: "group",
    TYPE_TASK: "task",
}

EXPANDER = "_expander"

GRANT_SUCCESS = "success"
GRANT_SKIPPED = "skipped"
GRANT_FAILED = "failed"


def _references(values: Any) -> List[Dict[str, Any]]:
    if not isinstance(values, list):
        return []
    return [v for v in values if isinstance(v, dict) and v.get("reference")]


def _unwrap_entity(result: Any) -> Optional[Dict[str, Any]]:
    """Entu usually wraps a single entity in ``{"entity": {...}}`` but not always."""
    data = result.get("entity") if isinstance(result, dict) and "entity" in result else result
    if not isinstance(data, dict) or not data:
        return None
    return data


def _entity_path(entity_id: str) -> str:
    return f"/entity/{quote(str(entity_id), safe='')}"


def _retry_after_seconds(response: requests.Response) -> int:
    # Retry-After may also be an HTTP-date; wait the default second then
    try:
        return max(0, int(response.headers.get("Retry-After", 1)))
    except (TypeError, ValueError):
        return 1


@dataclass(frozen=True)
class EntityRef:
    """Read-only view of an Entu entity, valid for one reconciliation pass."""

    id: str
    kind: str
    entity_type: Optional[str] = None
    parent_group_ids: Tuple[str, ...] = ()
    group_id: Optional[str] = None
    expander_ids: Tuple[str, ...] = ()

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "EntityRef":
        """Build from Entu's property-array JSON."""
        types = data.get("_type")
        entity_type = types[0].get("string") if isinstance(types, list) and types and isinstance(types[0], dict) else None

        # Only _parent references pointing at grupp entities are memberships
        parent_group_ids = tuple(
            str(p["reference"]) for p in _references(data.get("_parent"))
            if p.get("entity_type") == TYPE_GROUP
        )

        groups = _references(data.get(TYPE_GROUP))
        group_id = str(groups[0]["reference"]) if groups else None

        expander_ids = tuple(str(e["reference"]) for e in _references(data.get(EXPANDER)))

        return cls(
            id=str(data.get("_id", "")),
            kind=KIND_BY_TYPE.get(entity_type, "other"),
            entity_type=entity_type,
            parent_group_ids=parent_group_ids,
            group_id=group_id,
            expander_ids=expander_ids,
        )


@dataclass(frozen=True)
class GrantRequest:
    subject_id: str
    target_id: str


@dataclass(frozen=True)
class GrantOutcome:
    subject_id: str
    target_id: str
    status: str
    error: Optional[str] = None


@dataclass
class GrantResult:
    """Outcome of a grant batch; successful + skipped + failed == requests submitted."""

    successful: int = 0
    skipped: int = 0
    failed: int = 0
    details: List[GrantOutcome] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.successful + self.skipped + self.failed

    def record(self, request: GrantRequest, status: str, error: Optional[str] = None) -> None:
        if status == GRANT_SUCCESS:
            self.successful += 1
        elif status == GRANT_SKIPPED:
            self.skipped += 1
        else:
            self.failed += 1
        self.details.append(GrantOutcome(request.subject_id, request.target_id, status, error))


class EntuClient:
    """Thin client over the Entu entity API."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        account: Optional[str] = None,
        timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
        session: Optional[requests.Session] = None,
    ):
        api_url = (api_url or settings.ENTU_API_URL).rstrip("/")
        account = account or settings.ENTU_ACCOUNT
        self.base_url = f"{api_url}/api/{account}"
        self.timeout = timeout if timeout is not None else settings.ENTU_REQUEST_TIMEOUT
        self.max_retries = max_retries if max_retries is not None else settings.ENTU_MAX_RETRIES
        self.session = session or requests.Session()
        self.session.headers.update({
            "Accept": "application/json",
            "Accept-Encoding": "deflate",
        })

    def fetch_entity(self, entity_id: str, token: Optional[str]) -> EntityRef:
        """
        Fetch one entity.

        Raises:
            Unauthorized: no token was relayed
            RemoteError: Entu answered with an error or could not be reached
        """
        result = self._request("GET", _entity_path(entity_id), token)

        data = _unwrap_entity(result)
        if data is None:
            raise RemoteError(f"Entity {entity_id} not found", remote_status=404)

        entity = EntityRef.from_api(data)
        logger.debug(f"Fetched entity {entity_id} ({entity.entity_type})")
        return entity

    def list_related(
        self,
        filter_field: str,
        filter_value: str,
        token: Optional[str],
        entity_type: Optional[str] = None,
        props: str = "_id,_type,_parent,grupp",
    ) -> List[EntityRef]:
        """Return entities where ``filter_field`` equals ``filter_value``; empty list if none match."""
        params = {filter_field: filter_value, "props": props}
        if entity_type:
            params["_type.string"] = entity_type

        result = self._request("GET", "/entity", token, params=params)
        entities = (result or {}).get("entities") or []
        related = [EntityRef.from_api(e) for e in entities if isinstance(e, dict)]

        logger.info(
            f"Found {len(related)} {entity_type or 'entities'} where {filter_field}={filter_value}",
            extra={"filter_field": filter_field, "filter_value": filter_value},
        )
        return related

    def list_tasks_in_group(self, group_id: str, token: Optional[str]) -> List[EntityRef]:
        return self.list_related("grupp.reference", group_id, token, entity_type=TYPE_TASK)

    def list_persons_in_group(self, group_id: str, token: Optional[str]) -> List[EntityRef]:
        return self.list_related("_parent.reference", group_id, token, entity_type=TYPE_PERSON)

    def grant_access(
        self,
        subject_ids: Iterable[str],
        target_ids: Iterable[str],
        token: Optional[str],
    ) -> GrantResult:
        """
        Grant ``_expander`` on every target to every subject.

        Pairs that already exist are skipped. Remaining subjects are granted
        on each target in one call; if that call fails each pair is retried on
        its own so a single bad pair does not fail its siblings. Never raises
        for per-pair failures.
        """
        subject_ids = list(dict.fromkeys(subject_ids))
        target_ids = list(dict.fromkeys(target_ids))
        result = GrantResult()

        logger.info(
            f"Starting batch grant of {EXPANDER}: {len(subject_ids)} subjects x {len(target_ids)} targets"
        )

        for target_id in target_ids:
            existing = self._existing_expanders(target_id, token)

            pending = []
            for subject_id in subject_ids:
                request = GrantRequest(subject_id, target_id)
                if subject_id in existing:
                    logger.debug(f"{EXPANDER} already present on {target_id} for {subject_id}, skipping")
                    result.record(request, GRANT_SKIPPED)
                else:
                    pending.append(request)

            if not pending:
                continue

            try:
                self._add_expanders(target_id, pending, token)
                for request in pending:
                    result.record(request, GRANT_SUCCESS)
                continue
            except RemoteError as e:
                if len(pending) == 1:
                    logger.error(f"Failed to grant {EXPANDER} on {target_id} to {pending[0].subject_id}: {e}")
                    result.record(pending[0], GRANT_FAILED, str(e))
                    continue
                logger.warning(
                    f"Bulk grant on {target_id} failed ({e}); retrying {len(pending)} grants one by one"
                )

            for request in pending:
                try:
                    self._add_expanders(target_id, [request], token)
                    result.record(request, GRANT_SUCCESS)
                except RemoteError as e:
                    logger.error(f"Failed to grant {EXPANDER} on {target_id} to {request.subject_id}: {e}")
                    result.record(request, GRANT_FAILED, str(e))

        logger.info(
            f"Batch grant completed: total={result.total} successful={result.successful} "
            f"skipped={result.skipped} failed={result.failed}"
        )
        return result

    def _existing_expanders(self, target_id: str, token: Optional[str]) -> set:
        """Subjects already holding ``_expander`` on the target; empty if they cannot be read."""
        try:
            result = self._request("GET", _entity_path(target_id), token)
        except RemoteError as e:
            logger.warning(f"Failed to check existing {EXPANDER} on {target_id}, assuming none: {e}")
            return set()

        data = _unwrap_entity(result)
        if data is None:
            return set()
        return set(EntityRef.from_api(data).expander_ids)

    def _add_expanders(self, target_id: str, grants: List[GrantRequest], token: Optional[str]) -> None:
        properties = [{"type": EXPANDER, "reference": r.subject_id} for r in grants]
        self._request("POST", _entity_path(target_id), token, json=properties)
        logger.info(f"Granted {EXPANDER} on {target_id} to {len(grants)} subject(s)")

    def _request(
        self,
        method: str,
        endpoint: str,
        token: Optional[str],
        retry_count: int = 0,
        **kwargs,
    ) -> Dict[str, Any]:
        """Make API request with retry logic."""
        if not token:
            raise Unauthorized("Missing user authentication token; relayed webhook token is required")

        url = f"{self.base_url}{endpoint}"
        headers = {"Authorization": f"Bearer {token}"}

        try:
            response = self.session.request(method=method, url=url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.exceptions.RequestException as e:
            if retry_count < self.max_retries and isinstance(
                e, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)
            ):
                wait_time = 2 ** retry_count
                logger.warning(f"Entu API {method} {endpoint} failed ({e}). Retrying in {wait_time}s...")
                time.sleep(wait_time)
                return self._request(method, endpoint, token, retry_count + 1, **kwargs)
            logger.error(f"Entu API request failed: {method} {endpoint}: {e}")
            raise RemoteError(f"Failed to communicate with Entu API: {e}") from e

        if response.status_code == 429 and retry_count < self.max_retries:
            retry_after = min(_retry_after_seconds(response), settings.ENTU_MAX_RETRY_AFTER)
            logger.warning(f"Rate limited by Entu. Waiting {retry_after}s...")
            time.sleep(retry_after)
            return self._request(method, endpoint, token, retry_count + 1, **kwargs)

        if response.status_code >= 500 and retry_count < self.max_retries:
            wait_time = 2 ** retry_count
            logger.warning(f"Entu server error {response.status_code}. Retrying in {wait_time}s...")
            time.sleep(wait_time)
            return self._request(method, endpoint, token, retry_count + 1, **kwargs)

        if not response.ok:
            body = response.text[:500] if response.text else ""
            logger.warning(f"Entu API call failed: {method} {endpoint} -> {response.status_code} {body}")
            raise RemoteError(
                f"Entu API error: {response.status_code} {response.reason or ''}".strip(),
                remote_status=response.status_code,
            )

        if not response.content:
            return {}
        try:
            return response.json()
        except ValueError as e:
            logger.warning(f"Entu API returned invalid JSON: {method} {endpoint} -> {response.text[:200]}")
            raise RemoteError(
                f"Invalid JSON from Entu API: {e}", remote_status=response.status_code
            ) from e
