"""
Test doubles and constants shared by the test modules: a controllable
clock, fake Intuit endpoints behind httpx.MockTransport, and direct
shift-row edits for setup.
"""

import json
import re
import sqlite3
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List

import httpx

from payroll_sync.store import PayrollStore, to_db_time


TEST_KEY = bytes(range(32))
TEST_STATE_SECRET = "state-secret-for-tests-0123456789abcdef"
TENANT = "tenant-1"
REALM = "9130350000000001"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


class FakeIntuit:
    """
    In-memory stand-in for the Intuit OAuth and accounting endpoints.

    Queue explicit responses with token_responses / activity_responses;
    otherwise realistic defaults are returned.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.token_responses: List[httpx.Response] = []
        self.activity_responses: List[httpx.Response] = []
        self.revoke_status = 200
        self.query_rows: Dict[str, List[Dict[str, Any]]] = {}
        self.token_calls = 0
        self._next_activity_id = 100

    def requests_to(self, fragment: str) -> List[httpx.Request]:
        return [r for r in self.requests if fragment in str(r.url)]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        host = request.url.host
        path = request.url.path

        if host == "oauth.platform.intuit.com":
            self.token_calls += 1
            if self.token_responses:
                return self.token_responses.pop(0)
            return httpx.Response(200, json={
                "access_token": f"access-{self.token_calls}",
                "refresh_token": f"refresh-{self.token_calls}",
                "expires_in": 3600,
                "token_type": "bearer",
            })

        if host == "developer.api.intuit.com":
            return httpx.Response(self.revoke_status)

        if path.endswith("/query"):
            return self._query(request.url.params["query"])

        if path.endswith("/timeactivity"):
            if self.activity_responses:
                return self.activity_responses.pop(0)
            body = json.loads(request.content or b"{}")
            if request.url.params.get("operation") == "delete":
                return httpx.Response(200, json={"TimeActivity": {"Id": body["Id"], "status": "Deleted"}})
            if "Id" in body:
                token = str(int(body["SyncToken"]) + 1)
                return httpx.Response(200, json={"TimeActivity": {"Id": body["Id"], "SyncToken": token}})
            self._next_activity_id += 1
            return httpx.Response(200, json={
                "TimeActivity": {"Id": str(self._next_activity_id), "SyncToken": "0"}
            })

        return httpx.Response(404, json={"error": "unexpected path"})

    def _query(self, statement: str) -> httpx.Response:
        entity = re.search(r"FROM (\w+)", statement).group(1)
        start = int(re.search(r"STARTPOSITION (\d+)", statement).group(1))
        limit = int(re.search(r"MAXRESULTS (\d+)", statement).group(1))
        rows = self.query_rows.get(entity, [])[start - 1:start - 1 + limit]
        body: Dict[str, Any] = {"startPosition": start, "maxResults": len(rows)}
        if rows:
            body[entity] = rows
        return httpx.Response(200, json={"QueryResponse": body, "time": "2024-03-04T10:00:00.000-08:00"})


def fault(status: int, message: str = "Business Validation Error", detail: str = "Bad request") -> httpx.Response:
    return httpx.Response(status, json={
        "Fault": {"Error": [{"Message": message, "Detail": detail, "code": "6000"}], "type": "ValidationFault"}
    })


def set_shift_fields(store: PayrollStore, shift_id: str, **fields):
    """Write sync columns directly for test setup."""
    values = []
    for value in fields.values():
        if isinstance(value, datetime):
            value = to_db_time(value)
        elif isinstance(value, Enum):
            value = value.value
        values.append(value)
    assignments = ", ".join(f"{name} = ?" for name in fields)
    conn = sqlite3.connect(store.db_path)
    try:
        conn.execute(f"UPDATE shifts SET {assignments} WHERE id = ?", [*values, shift_id])
        conn.commit()
    finally:
        conn.close()

