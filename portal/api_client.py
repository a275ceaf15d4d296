# Async client for the remote grievance API

import asyncio
import logging
from typing import Dict, List, Optional, Tuple, Type, TypeVar
from urllib.parse import quote

import httpx
from pydantic import BaseModel, ValidationError

from .config import API_BASE_URL, API_TIMEOUT_SECONDS
from .models import (
    AdminBoard, AnalyticsReport, GrievanceDetail, GrievanceForm, GrievanceSummary,
    Officer, UserRole,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

# (filename, content, content_type)
Upload = Tuple[str, bytes, str]


def multipart_fields(fields: Dict[str, str], file_field: str, upload: Optional[Upload]) -> list:
    """Parts for a multipart/form-data body, even when no file is attached."""
    parts = [(name, (None, value)) for name, value in fields.items()]
    if upload:
        parts.append((file_field, upload))
    return parts


SESSION_CHECK_ENDPOINTS = {
    UserRole.CITIZEN.value: "/api/checkUserSession",
    UserRole.OFFICER.value: "/api/checkOfficerSession",
    UserRole.ADMIN.value: "/api/checkAdminSession",
}

OTP_SENT = "OTP sent successfully"
OTP_VERIFIED = "Login successful"


class APIError(Exception):
    """A remote call failed. ``message`` is safe to show to the visitor."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class PortalAPI:
    """One visitor's view of the remote API.

    The remote API authenticates with its own session cookie. The client works
    on the cookie dict cached in the visitor's portal session and records every
    cookie the remote sets into it, so the session picks them up in place.
    """

    def __init__(self, cookies: Optional[Dict[str, str]] = None, base_url: str = API_BASE_URL,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 timeout: float = API_TIMEOUT_SECONDS):
        self.cookies: Dict[str, str] = cookies if cookies is not None else {}
        self._client = httpx.AsyncClient(base_url=base_url, cookies=self.cookies,
                                         transport=transport, timeout=timeout)

    async def __aenter__(self) -> "PortalAPI":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- plumbing ------------------------------------------------------------
    def _remember_cookies(self, response: httpx.Response) -> None:
        set_cookies = dict(response.cookies)
        if set_cookies:
            self.cookies.update(set_cookies)
        # Keep a single, domain-less jar so later calls send each cookie once
        self._client.cookies = self.cookies

    def forget_cookies(self) -> None:
        """Stop authenticating upstream for the rest of this client's life."""
        self.cookies.clear()
        self._client.cookies.clear()

    async def _request(self, method: str, path: str, rejected: str, failure: str, **kwargs) -> dict:
        """Issue a call and return its JSON body.

        ``rejected`` is shown when the remote answers with a non-2xx status and
        no message of its own; ``failure`` when the call never produced a usable
        response.
        """
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error("%s %s failed: %s", method, path, e)
            raise APIError(failure) from e
        self._remember_cookies(response)
        try:
            data = response.json()
        except ValueError:
            data = None
        if not response.is_success:
            message = data.get("message") if isinstance(data, dict) else None
            logger.error("%s %s returned %s: %s", method, path, response.status_code, message)
            raise APIError(message or rejected, response.status_code)
        if not isinstance(data, dict):
            logger.error("%s %s returned a non-JSON body", method, path)
            raise APIError(failure, response.status_code)
        return data

    @staticmethod
    def _parse(model: Type[M], payload, failure: str) -> M:
        try:
            return model.model_validate(payload)
        except ValidationError as e:
            logger.error("Unexpected %s payload: %s", model.__name__, e)
            raise APIError(failure) from e

    @classmethod
    def _parse_list(cls, model: Type[M], payload, failure: str) -> List[M]:
        if payload is None:
            return []
        if not isinstance(payload, list):
            logger.error("Expected a list of %s, got %s", model.__name__, type(payload).__name__)
            raise APIError(failure)
        return [cls._parse(model, item, failure) for item in payload]

    # -- auth ----------------------------------------------------------------
    async def send_otp(self, email: str) -> str:
        data = await self._request(
            "POST", "/api/auth/send-otp", json={"email": email},
            rejected="Failed to send OTP.", failure="Failed to generate OTP. Please try again.")
        if data.get("message") != OTP_SENT:
            raise APIError(data.get("message") or "Failed to send OTP.")
        return data["message"]

    async def verify_otp(self, email: str, otp: str) -> str:
        data = await self._request(
            "POST", "/api/auth/verify-otp", json={"email": email, "otp": otp},
            rejected="Invalid OTP or email.", failure="Login failed. Please try again.")
        if data.get("message") != OTP_VERIFIED:
            raise APIError(data.get("message") or "Invalid OTP or email.")
        return data["message"]

    async def officer_login(self, email: str, password: str) -> Tuple[str, Officer]:
        """Log an officer or admin in; returns ``(user_type, user)``."""
        data = await self._request(
            "POST", "/api/officer/login", json={"email": email, "password": password},
            rejected="Login failed due to an unknown error.", failure="Login failed. Please try again.")
        user_type = data.get("userType")
        if user_type not in (UserRole.OFFICER.value, UserRole.ADMIN.value):
            logger.error("Officer login returned unexpected userType %r", user_type)
            raise APIError("Login failed due to an unknown error.")
        user = self._parse(Officer, data.get("user"), "Login failed. Please try again.")
        return user_type, user

    async def logout(self) -> None:
        await self._request("GET", "/api/logout", rejected="Logout failed.", failure="Logout failed.")

    async def check_session(self, role: str) -> bool:
        """Ask the remote whether the visitor still holds a session for ``role``."""
        endpoint = SESSION_CHECK_ENDPOINTS.get(role)
        if endpoint is None:
            return False
        try:
            response = await self._client.get(endpoint)
        except httpx.HTTPError as e:
            logger.error("Session check %s failed: %s", endpoint, e)
            return False
        self._remember_cookies(response)
        return response.status_code == 200

    # -- citizen -------------------------------------------------------------
    async def submit_complaint(self, form: GrievanceForm, attachment: Optional[Upload] = None) -> str:
        """Submit a grievance; returns its tracking id."""
        fields = {
            "category": form.category,
            "title": form.title,
            "description": form.description,
            "location": form.location_payload(),
        }
        data = await self._request(
            "POST", "/api/complaints/submit", files=multipart_fields(fields, "attachments", attachment),
            rejected="Something went wrong. Please try again.",
            failure="Server error. Please try again later.")
        grievance_id = data.get("grievanceId")
        if not grievance_id:
            logger.error("Complaint submission returned no grievanceId")
            raise APIError("Server error. Please try again later.")
        return str(grievance_id)

    async def user_complaints(self) -> Tuple[str, List[GrievanceSummary]]:
        data = await self._request(
            "GET", "/api/complaints/userComplaints",
            rejected="Failed to fetch complaints.", failure="Could not load your grievances.")
        complaints = self._parse_list(GrievanceSummary, data.get("complaints"), "Could not load your grievances.")
        return data.get("email") or "", complaints

    async def track_grievance(self, tracking_id: str) -> GrievanceDetail:
        data = await self._request(
            "GET", f"/api/complaints/track/{quote(tracking_id, safe='')}",
            rejected="Grievance not found.", failure="Could not fetch grievance status.")
        return self._parse(GrievanceDetail, data.get("grievance", data), "Could not fetch grievance status.")

    # -- officer -------------------------------------------------------------
    async def officer_dashboard(self) -> List[GrievanceSummary]:
        data = await self._request(
            "GET", "/api/officer/dashboard",
            rejected="Failed to load grievances", failure="Server error while fetching grievances.")
        return self._parse_list(GrievanceSummary, data.get("grievances"), "Server error while fetching grievances.")

    async def officer_grievance(self, grievance_id: str) -> GrievanceDetail:
        data = await self._request(
            "GET", f"/api/officer/grievance/{quote(grievance_id, safe='')}",
            rejected="Failed to fetch details", failure="Server error fetching details.")
        return self._parse(GrievanceDetail, data.get("grievance"), "Server error fetching details.")

    async def submit_update(self, grievance_id: str, status: str, notes: str,
                            evidence: Optional[Upload] = None) -> dict:
        return await self._request(
            "POST", f"/api/officer/submitUpdate/{quote(grievance_id, safe='')}",
            files=multipart_fields({"nstatus": status, "notes": notes}, "file", evidence),
            rejected="Failed to submit update", failure="Server error during update.")

    # -- admin ---------------------------------------------------------------
    async def pending_complaints(self) -> List[GrievanceSummary]:
        data = await self._request(
            "GET", "/api/admin/get-complaints",
            rejected="Failed to fetch pending complaints", failure="Could not fetch dashboard data.")
        return self._parse_list(GrievanceSummary, data.get("complaints"), "Could not fetch dashboard data.")

    async def officers(self) -> List[Officer]:
        data = await self._request(
            "GET", "/api/admin/get-officers",
            rejected="Failed to fetch officers", failure="Could not fetch dashboard data.")
        return self._parse_list(Officer, data.get("officers"), "Could not fetch dashboard data.")

    async def all_complaints(self) -> List[GrievanceSummary]:
        data = await self._request(
            "GET", "/api/admin/get-all-complaints",
            rejected="Failed to fetch all complaints", failure="Could not fetch dashboard data.")
        return self._parse_list(GrievanceSummary, data.get("complaints"), "Could not fetch dashboard data.")

    async def admin_board(self) -> AdminBoard:
        """Fetch the three admin lists concurrently; any failure fails the whole board."""
        pending, officers, all_complaints = await asyncio.gather(
            self.pending_complaints(), self.officers(), self.all_complaints())
        return AdminBoard(pending=pending, officers=officers, all_complaints=all_complaints)

    async def assign(self, grievance_id: str, officer_name: str) -> dict:
        return await self._request(
            "POST", "/api/admin/assign", json={"grievanceId": grievance_id, "officerName": officer_name},
            rejected="Assignment failed", failure="Server error while assigning officer")

    async def analytics(self) -> AnalyticsReport:
        failure = "Server error. Try again later."
        dashboard = await self._request(
            "GET", "/api/admin/dashboard", rejected="Failed to fetch dashboard stats", failure=failure)
        performance = await self._request(
            "GET", "/api/admin/officerPerformance",
            rejected="Failed to fetch officer performance", failure=failure)
        extended = await self._request(
            "GET", "/api/admin/extendedAnalytics",
            rejected="Failed to fetch extended analytics", failure=failure)
        try:
            return AnalyticsReport.merge(dashboard, performance, extended)
        except ValidationError as e:
            logger.error("Unexpected analytics payload: %s", e)
            raise APIError(failure) from e
