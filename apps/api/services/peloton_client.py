"""
Peloton API client.

Thin, single-attempt wrapper over the two remote surfaces:
- REST (api.onepeloton.com): profile, workouts, performance graphs, class search
- GraphQL gateway: view / replace / append to the user's stack

Every request carries the decrypted access token as a bearer credential.
401 from either surface raises PelotonAuthError; any other failure raises
PelotonApiError. Retries are the caller's responsibility.
"""
import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import requests

from core.config import settings

logger = logging.getLogger(__name__)

MAX_STACK_SIZE = 10

_CLASS_ID_RE = re.compile(r"^[a-f0-9]{32}$", re.IGNORECASE)


class PelotonError(Exception):
    """Base Peloton error."""


class PelotonAuthError(PelotonError):
    """Access token expired or rejected (HTTP 401)."""


class PelotonApiError(PelotonError):
    """Non-auth API failure. status_code is None for transport errors."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class InvalidClassIdError(ValueError):
    """Class id is not a 32-character hex string."""


def is_valid_class_id(class_id: Optional[str]) -> bool:
    return isinstance(class_id, str) and bool(_CLASS_ID_RE.match(class_id))


def encode_class_id(class_id: str, class_type: str = "on_demand") -> str:
    """
    Encode a ride id into the composite id the GraphQL API expects.

    base64 of {"home_peloton_id": null, "ride_id": ..., "studio_peloton_id": null, "type": ...}
    with ", " / ": " separators, matching what the Peloton web app sends.

    Raises:
        InvalidClassIdError: before any network call, if the id is malformed
    """
    if not is_valid_class_id(class_id):
        raise InvalidClassIdError(f"Invalid Peloton class ID format: {str(class_id)[:50]}")
    payload = {
        "home_peloton_id": None,
        "ride_id": class_id,
        "studio_peloton_id": None,
        "type": class_type,
    }
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def decode_class_id(encoded_id: Optional[str]) -> Optional[str]:
    """Decode a composite GraphQL class id back to the raw ride id (None if undecodable)."""
    if not encoded_id:
        return None
    if is_valid_class_id(encoded_id):
        return encoded_id
    try:
        decoded = json.loads(base64.b64decode(encoded_id).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError):
        logger.warning(f"Failed to decode GraphQL class ID: {encoded_id[:50]}")
        return None
    if not isinstance(decoded, dict):
        return None
    return decoded.get("ride_id") or None


@dataclass
class StackMutationResult:
    """Stack state reported by a GraphQL stack mutation."""
    num_classes: int
    class_ids: List[str] = field(default_factory=list)
    total_time: Optional[int] = None


_STACK_FIELDS = """
          numClasses
          totalTime
          userStack {
            stackedClassList {
              playOrder
              pelotonClass {
                classId
                title
              }
            }
          }
"""

VIEW_STACK_QUERY = """
  query ViewUserStack {
    viewUserStack {
      numClasses
      totalTime
      ... on StackResponseSuccess {
        userStack {
          stackedClassList {
            playOrder
            pelotonClass {
              classId
              title
              duration
              fitnessDiscipline { slug displayName }
              instructor { name }
            }
          }
        }
      }
    }
  }
"""

MODIFY_STACK_MUTATION = """
  mutation ModifyStack($input: ModifyStackInput!) {
    modifyStack(input: $input) {%s}
  }
""" % _STACK_FIELDS

ADD_CLASS_TO_STACK_MUTATION = """
  mutation AddClassToStack($input: AddClassToStackInput!) {
    addClassToStack(input: $input) {%s}
  }
""" % _STACK_FIELDS


def _parse_stack_mutation(payload: Optional[Dict]) -> StackMutationResult:
    payload = payload or {}
    stacked = (payload.get("userStack") or {}).get("stackedClassList") or []
    class_ids = []
    for item in stacked:
        raw = decode_class_id(((item or {}).get("pelotonClass") or {}).get("classId"))
        if raw:
            class_ids.append(raw)
    return StackMutationResult(
        num_classes=int(payload.get("numClasses") or 0),
        class_ids=class_ids,
        total_time=payload.get("totalTime"),
    )


class PelotonClient:
    """
    Synchronous Peloton client bound to one access token.

    Usage:
        client = PelotonClient(decrypt_token(token.access_token_encrypted))
        me = client.get_me()
        client.modify_stack([])
        client.add_class_to_stack(class_id)
    """

    def __init__(
        self,
        access_token: str,
        timeout: Optional[float] = None,
        http: Optional[requests.Session] = None,
    ):
        self.access_token = access_token
        self.timeout = timeout if timeout is not None else settings.EXTERNAL_API_TIMEOUT
        self.http = http or requests.Session()
        self.api_url = settings.PELOTON_API_URL.rstrip("/")
        self.graphql_url = settings.PELOTON_GRAPHQL_URL

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    def _send(self, method: str, url: str, **kwargs) -> requests.Response:
        try:
            r = self.http.request(method, url, headers=self._headers(), timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise PelotonApiError(f"Request to Peloton failed: {e}") from e

        if r.status_code == 401:
            raise PelotonAuthError("Token expired or invalid")
        if not 200 <= r.status_code < 300:
            raise PelotonApiError(
                f"API request failed: {r.status_code} {r.reason or ''}".strip(),
                r.status_code,
            )
        return r

    def _get(self, endpoint: str, params: Optional[Any] = None) -> Any:
        r = self._send("GET", f"{self.api_url}{endpoint}", params=params)
        try:
            return r.json()
        except ValueError as e:
            raise PelotonApiError("Peloton returned invalid JSON", r.status_code) from e

    def _graphql(self, query: str, variables: Optional[Dict] = None) -> Dict:
        r = self._send("POST", self.graphql_url, json={"query": query, "variables": variables})
        try:
            result = r.json()
        except ValueError as e:
            raise PelotonApiError("GraphQL gateway returned invalid JSON", r.status_code) from e

        errors = result.get("errors") or []
        if errors:
            message = ", ".join(str(e.get("message")) for e in errors if isinstance(e, dict))
            raise PelotonApiError(f"GraphQL error: {message}", 400)
        return result.get("data") or {}

    # -------------------------------------------------------------------------
    # REST
    # -------------------------------------------------------------------------

    def get_me(self) -> Dict:
        """Authenticated user profile (also the cheapest token validity check)."""
        return self._get("/api/me")

    def get_workout(self, workout_id: str) -> Dict:
        return self._get(f"/api/workout/{workout_id}")

    def get_workout_performance_graph(self, workout_id: str) -> Dict:
        return self._get(f"/api/workout/{workout_id}/performance_graph")

    def get_user_workouts(
        self,
        user_id: str,
        limit: Optional[int] = None,
        page: Optional[int] = None,
        joins: Optional[str] = None,
    ) -> Dict:
        params = {}
        if limit:
            params["limit"] = limit
        if page:
            params["page"] = page
        if joins:
            params["joins"] = joins
        return self._get(f"/api/user/{user_id}/workouts", params=params or None)

    def search_rides(
        self,
        browse_category: Optional[str] = None,
        content_format: Optional[str] = None,
        fitness_discipline: Optional[str] = None,
        instructor_id: Optional[str] = None,
        sort_by: Optional[str] = None,
        page: Optional[int] = None,
        limit: Optional[int] = None,
        duration: Optional[List[int]] = None,
    ) -> Dict:
        """Search the on-demand class archive. `duration` values are seconds."""
        params = [("joins", "instructor")]
        for name, value in (
            ("browse_category", browse_category),
            ("content_format", content_format),
            ("fitness_discipline", fitness_discipline),
            ("instructor_id", instructor_id),
            ("sort_by", sort_by),
        ):
            if value:
                params.append((name, value))
        if page is not None:
            params.append(("page", str(page)))
        if limit:
            params.append(("limit", str(limit)))
        for d in duration or []:
            params.append(("duration", str(d)))
        return self._get("/api/v2/ride/archived", params=params)

    # -------------------------------------------------------------------------
    # GraphQL stack
    # -------------------------------------------------------------------------

    def view_user_stack(self) -> Dict:
        """Current stack as returned by viewUserStack (raw payload)."""
        data = self._graphql(VIEW_STACK_QUERY)
        return data.get("viewUserStack") or {}

    def modify_stack(self, class_ids: List[str]) -> StackMutationResult:
        """
        Replace the whole stack with `class_ids` (first MAX_STACK_SIZE kept).

        An empty list clears the stack.
        """
        encoded = [encode_class_id(cid) for cid in class_ids[:MAX_STACK_SIZE]]
        data = self._graphql(
            MODIFY_STACK_MUTATION,
            {"input": {"pelotonClassIdList": encoded}},
        )
        return _parse_stack_mutation(data.get("modifyStack"))

    def add_class_to_stack(self, class_id: str) -> StackMutationResult:
        """Append one class to the end of the stack."""
        encoded = encode_class_id(class_id)
        data = self._graphql(
            ADD_CLASS_TO_STACK_MUTATION,
            {"input": {"pelotonClassId": encoded}},
        )
        return _parse_stack_mutation(data.get("addClassToStack"))
