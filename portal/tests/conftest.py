"""
Shared pytest fixtures for the Citizen Grievance Portal frontend test suite.

The remote grievance API is replaced by an in-memory fake served through
httpx.MockTransport, so every page runs in-process against known data and
each remote call is recorded for inspection.
"""

import json
import os
import re
from typing import Dict, List, Optional, Tuple

os.environ.setdefault("SESSION_SECRET", "test-session-secret-that-is-long-enough-0123456789")

import httpx
import pytest
import pytest_asyncio

from portal.session import get_api_transport
from portal.webapp import app, limiter


def _cookies(request: httpx.Request) -> Dict[str, str]:
    jar = {}
    for part in request.headers.get("cookie", "").split(";"):
        name, _, value = part.strip().partition("=")
        if name:
            jar[name] = value
    return jar


class FakeBackend:
    """Stand-in for the remote grievance API."""

    OTP = "123456"
    CHECKS = {
        "/api/checkUserSession": "citizen",
        "/api/checkOfficerSession": "officer",
        "/api/checkAdminSession": "admin",
    }

    def __init__(self):
        self.calls: List[Tuple[str, str]] = []
        self.requests: List[httpx.Request] = []
        self.failures: Dict[Tuple[str, str], object] = {}
        self.revoked: set = set()
        self.sessions: Dict[str, str] = {}
        self.users = {
            "officer@portal.gov": ("Officer@123", "officer", "Ravi Kumar"),
            "admin@portal.gov": ("Admin@123", "admin", "Meera Nair"),
        }
        self.citizen_complaints = [
            {"_id": "a1", "grievanceId": "GRV-1001", "title": "Broken streetlight",
             "description": "Streetlight on 5th Cross has been off for two weeks.",
             "category": "Municipal Issues", "status": "resolved", "submittedAt": "2025-01-10T09:30:00Z"},
            {"_id": "a2", "grievanceId": "GRV-1002", "title": "Water supply disruption",
             "description": "No piped water in Ward 7 since Monday.",
             "category": "Utility Services", "status": "in_progress", "submittedAt": "2025-02-01T08:00:00Z"},
            {"_id": "a3", "grievanceId": "GRV-1003", "title": "Garbage not collected",
             "description": "Garbage has not been collected from Lane 4.",
             "category": "Healthcare & Sanitation", "status": None, "submittedAt": "2025-02-12T07:15:00Z"},
        ]
        self.officer_grievances = [
            {"grievanceId": "GRV-2001", "title": "Pothole on Main Road",
             "description": "A large pothole near the bus stop is causing accidents every evening.",
             "category": "Transport & Infrastructure", "assignedDate": "2025-03-02T10:00:00Z",
             "status": "In Progress", "priority": "High"},
            {"grievanceId": "GRV-2002", "title": "Park lights",
             "description": "Lights in the park are off.",
             "category": "Municipal Issues", "assignedDate": "2025-03-05T10:00:00Z",
             "status": "Resolved", "priority": "Low"},
        ]
        self.grievance_details = {
            "GRV-2001": {
                "grievanceId": "GRV-2001", "status": "in_progress", "title": "Pothole on Main Road",
                "category": "Transport & Infrastructure", "priority": "High",
                "submittedDate": "2025-03-01T09:00:00Z", "assignedDate": "2025-03-02T10:00:00Z",
                "location": {"address": "12 Main Road, Bhubaneswar"},
                "description": "A large pothole near the bus stop is causing accidents every evening.",
                "citizen": "asha@example.com",
                "evidence": [{"fileUrl": "https://files.example.com/pothole.jpg", "description": "Pothole photo"}],
                "logs": [{"officerName": "Ravi Kumar", "timestamp": "2025-03-03T11:00:00Z",
                          "status": "in_progress", "message": "Site inspection scheduled.",
                          "attachments": [{"fileUrl": "https://files.example.com/report.pdf",
                                           "fileType": "application/pdf"}]}],
            },
        }
        self.pending = [
            {"grievanceId": "GRV-3001", "title": "Illegal dumping", "category": "Municipal Issues",
             "submittedAt": "2025-04-01T09:00:00Z", "status": "Pending",
             "citizenId": {"name": "Asha", "email": "asha@example.com"}, "officerId": None},
            {"grievanceId": "GRV-3002", "title": "Stray cattle", "category": "Others",
             "submittedAt": "2025-04-02T09:00:00Z", "status": "Pending",
             "citizenId": {"name": "Vikram", "email": "vikram@example.com"}, "officerId": None},
        ]
        self.all_complaints = [dict(g) for g in self.pending] + [
            {"grievanceId": "GRV-3003", "title": "Blocked drain", "category": "Healthcare & Sanitation",
             "submittedAt": "2025-03-20T09:00:00Z", "status": "In Progress",
             "citizenId": {"name": "Asha", "email": "asha@example.com"},
             "officerId": {"name": "Anita Das", "email": "anita@portal.gov"}},
        ]
        self.officers = [
            {"name": "Ravi Kumar", "email": "officer@portal.gov"},
            {"name": "Anita Das", "email": "anita@portal.gov"},
        ]
        self.analytics = {
            "/api/admin/dashboard": {"totalGrievances": 42, "resolved": 30, "inProgress": 8,
                                     "pending": 4, "averageResolutionTime": "3.5"},
            "/api/admin/officerPerformance": {"performance": [
                {"officerName": "Ravi Kumar", "assigned": 20, "resolved": 15,
                 "resolutionRate": "75%", "avgResolutionTime": "3.2 days"},
                {"officerName": "Anita Das", "assigned": 22, "resolved": 15,
                 "resolutionRate": "68%", "avgResolutionTime": "3.8 days"},
            ]},
            "/api/admin/extendedAnalytics": {
                "categoryBreakdown": [{"category": "Municipal Issues", "count": 12}],
                "monthlyTrends": [{"month": "Jan", "submitted": 20, "resolved": 15},
                                  {"month": "Feb", "submitted": 22, "resolved": 15}],
                "systemMetrics": {"responseTime": "2 days", "resolutionRate": "71%",
                                  "satisfactionScore": "4.2/5", "reopeningRate": "5%"},
            },
        }
        self.assignments: List[dict] = []
        self.submissions: List[bytes] = []
        self.updates: List[Tuple[str, bytes]] = []

    # -- test controls ---------------------------------------------------------
    def fail(self, method: str, path: str, status: int = 500, body: Optional[dict] = None,
             error: Optional[Exception] = None) -> None:
        self.failures[(method, path)] = error if error is not None else (status, body)

    def called(self, method: str, path: str) -> bool:
        return (method, path) in self.calls

    # -- transport -------------------------------------------------------------
    def handle(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        self.calls.append((method, path))
        self.requests.append(request)
        failure = self.failures.get((method, path))
        if isinstance(failure, Exception):
            raise failure
        if failure is not None:
            status, body = failure
            if body is None:
                return httpx.Response(status, text="Internal Server Error")
            return httpx.Response(status, json=body)
        return self._route(request, method, path)

    def _login(self, role: str, email: str, body: dict) -> httpx.Response:
        sid = f"{role}.{len(self.sessions) + 1}"
        self.sessions[sid] = email
        return httpx.Response(200, json=body, headers={"set-cookie": f"connect.sid={sid}; Path=/; HttpOnly"})

    def _route(self, request: httpx.Request, method: str, path: str) -> httpx.Response:
        if path in self.CHECKS:
            sid = _cookies(request).get("connect.sid", "")
            role = self.CHECKS[path]
            if sid in self.sessions and sid.startswith(role + ".") and role not in self.revoked:
                return httpx.Response(200, json={"message": "Session valid"})
            return httpx.Response(401, json={"message": "Unauthorized"})

        if (method, path) == ("POST", "/api/auth/send-otp"):
            return httpx.Response(200, json={"message": "OTP sent successfully"})
        if (method, path) == ("POST", "/api/auth/verify-otp"):
            payload = _json(request)
            if payload.get("otp") != self.OTP:
                return httpx.Response(400, json={"message": "Invalid OTP"})
            return self._login("citizen", payload["email"], {"message": "Login successful"})
        if (method, path) == ("POST", "/api/officer/login"):
            payload = _json(request)
            user = self.users.get(payload.get("email"))
            if user is None or user[0] != payload.get("password"):
                return httpx.Response(401, json={"message": "Invalid email or password"})
            _, role, name = user
            return self._login(role, payload["email"], {
                "userType": role, "user": {"name": name, "email": payload["email"]}})
        if (method, path) == ("GET", "/api/logout"):
            self.sessions.pop(_cookies(request).get("connect.sid", ""), None)
            return httpx.Response(200, json={"message": "Logged out"})

        if (method, path) == ("GET", "/api/complaints/userComplaints"):
            sid = _cookies(request).get("connect.sid", "")
            return httpx.Response(200, json={"email": self.sessions.get(sid, ""),
                                             "complaints": self.citizen_complaints})
        if (method, path) == ("POST", "/api/complaints/submit"):
            self.submissions.append(request.read())
            return httpx.Response(201, json={"message": "Complaint submitted", "grievanceId": "GRV-1004"})
        m = re.fullmatch(r"/api/complaints/track/(.+)", path)
        if m and method == "GET":
            for g in self.citizen_complaints:
                if g["grievanceId"] == m.group(1):
                    return httpx.Response(200, json={"grievance": {**g, "submittedDate": g["submittedAt"],
                                                                   "logs": []}})
            return httpx.Response(404, json={"message": "Grievance not found"})

        if (method, path) == ("GET", "/api/officer/dashboard"):
            return httpx.Response(200, json={"grievances": self.officer_grievances})
        m = re.fullmatch(r"/api/officer/grievance/(.+)", path)
        if m and method == "GET":
            detail = self.grievance_details.get(m.group(1))
            if detail is None:
                return httpx.Response(404, json={"message": "Grievance not found"})
            return httpx.Response(200, json={"grievance": detail})
        m = re.fullmatch(r"/api/officer/submitUpdate/(.+)", path)
        if m and method == "POST":
            self.updates.append((m.group(1), request.read()))
            return httpx.Response(200, json={"message": "Update submitted",
                                             "grievance": self.grievance_details.get(m.group(1))})

        if (method, path) == ("GET", "/api/admin/get-complaints"):
            return httpx.Response(200, json={"complaints": self.pending})
        if (method, path) == ("GET", "/api/admin/get-officers"):
            return httpx.Response(200, json={"officers": self.officers})
        if (method, path) == ("GET", "/api/admin/get-all-complaints"):
            return httpx.Response(200, json={"complaints": self.all_complaints})
        if (method, path) == ("POST", "/api/admin/assign"):
            payload = _json(request)
            if not any(g["grievanceId"] == payload.get("grievanceId") for g in self.pending):
                return httpx.Response(404, json={"message": "Grievance not found"})
            # Lists are left as they were: the page must update them itself
            self.assignments.append(payload)
            return httpx.Response(200, json={"message": "Officer assigned"})
        if method == "GET" and path in self.analytics:
            return httpx.Response(200, json=self.analytics[path])

        return httpx.Response(404, json={"message": f"No route for {method} {path}"})


def _json(request: httpx.Request) -> dict:
    return json.loads(request.read() or b"{}")


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def mock_transport(backend):
    return httpx.MockTransport(backend.handle)


@pytest_asyncio.fixture
async def client(mock_transport):
    """In-process httpx AsyncClient talking to the portal, with the fake remote API behind it."""
    limiter.enabled = False
    app.dependency_overrides[get_api_transport] = lambda: mock_transport
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as c:
        yield c
    app.dependency_overrides.clear()


async def _login_citizen(client: httpx.AsyncClient, email: str = "asha@example.com") -> httpx.Response:
    resp = await client.post("/citizen/login", data={"email": email, "otp": FakeBackend.OTP})
    assert resp.status_code == 303, f"Citizen login failed: {resp.text}"
    return resp


async def _login_officer(client: httpx.AsyncClient, email: str = "officer@portal.gov",
                        password: str = "Officer@123") -> httpx.Response:
    resp = await client.post("/officer/login", data={"email": email, "password": password})
    assert resp.status_code == 303, f"Officer login failed: {resp.text}"
    return resp


@pytest_asyncio.fixture
async def citizen_client(client):
    await _login_citizen(client)
    return client


@pytest_asyncio.fixture
async def officer_client(client):
    await _login_officer(client)
    return client


@pytest_asyncio.fixture
async def admin_client(client):
    await _login_officer(client, "admin@portal.gov", "Admin@123")
    return client
