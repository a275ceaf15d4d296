# Citizen Grievance Portal: web frontend
# FastAPI + Jinja2 in front of the remote grievance API

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import quote

import uvicorn
from fastapi import Depends, FastAPI, File, Form, UploadFile, status
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from fastapi.templating import Jinja2Templates
from jinja2 import Environment, FileSystemLoader, select_autoescape
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from .api_client import APIError, PortalAPI
from .config import API_BASE_URL, BASE_DIR, CITIZEN_ATTACHMENT_TYPES, HOST, LOGIN_RATE_LIMIT, PORT
from .models import (
    GRIEVANCE_CATEGORIES, GrievanceForm, StatusUpdateForm, UpdateStatus, UserRole,
    citizen_attachment_error, evidence_attachment_error, grievance_stats, is_valid_email,
    workload_summary,
)
from .session import (
    AccessDenied, Session, SessionMiddleware, get_api, get_session, header_session, require_role,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App & Globals
# ---------------------------------------------------------------------------
app = FastAPI(title="Citizen Grievance Portal", docs_url=None, redoc_url=None, openapi_url=None)
limiter = Limiter(key_func=get_remote_address)
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------
class SecurityHeadersMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request, call_next):
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        response.headers["Content-Security-Policy"] = (
            "default-src 'self'; "
            "script-src 'self' 'unsafe-inline'; "
            "style-src 'self' 'unsafe-inline'; "
            "img-src 'self' data: https:; "
            "frame-ancestors 'none'"
        )
        # Pages depend on the session; never serve them from cache
        if response.headers.get("content-type", "").startswith("text/html"):
            response.headers["Cache-Control"] = "no-store, no-cache, must-revalidate"
        return response

app.add_middleware(SessionMiddleware)
app.add_middleware(SecurityHeadersMiddleware)

_jinja_env = Environment(
    loader=FileSystemLoader(str(BASE_DIR / "templates")),
    autoescape=select_autoescape(["html", "htm", "xml"]),
)
templates = Jinja2Templates(env=_jinja_env)
app.mount("/static", StaticFiles(directory=str(BASE_DIR / "static")), name="static")


def _format_date(value: Optional[datetime]) -> str:
    return value.strftime("%d %b %Y") if value else "—"

_jinja_env.filters["date"] = _format_date

# ---------------------------------------------------------------------------
# Navigation
# ---------------------------------------------------------------------------
NAV_TITLES = {
    UserRole.CITIZEN.value: "Citizen Portal",
    UserRole.OFFICER.value: "Officer Portal",
    UserRole.ADMIN.value: "Admin Portal",
}
NAV_LINKS = {
    UserRole.CITIZEN.value: [("Dashboard", "/citizen/dashboard"), ("Submit Grievance", "/submit")],
    UserRole.OFFICER.value: [("Dashboard", "/officer/dashboard"), ("Analytics", "/officer/analytics")],
    UserRole.ADMIN.value: [("Dashboard", "/admin/dashboard"), ("Analytics", "/admin/analytics")],
}
HOME_BY_ROLE = {
    UserRole.CITIZEN.value: "/citizen/dashboard",
    UserRole.OFFICER.value: "/officer/dashboard",
    UserRole.ADMIN.value: "/admin/dashboard",
}


def render(request: Request, template: str, session: Session, status_code: int = 200, **context):
    context.setdefault("message", None)
    context.update(
        session=session,
        nav_title=NAV_TITLES.get(session.role),
        nav_links=NAV_LINKS.get(session.role, []),
        current_path=request.url.path,
        flash=session.pop_flash(),
    )
    return templates.TemplateResponse(request, template, context, status_code=status_code)


def redirect(url: str) -> RedirectResponse:
    return RedirectResponse(url=url, status_code=status.HTTP_303_SEE_OTHER)

# ---------------------------------------------------------------------------
# Exception handlers
# ---------------------------------------------------------------------------
@app.exception_handler(AccessDenied)
async def access_denied_handler(request: Request, exc: AccessDenied):
    return redirect(exc.redirect_to)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    # Unknown pages go back to the landing page; missing assets stay 404
    if exc.status_code == 404 and not request.url.path.startswith("/static"):
        return redirect("/")
    return JSONResponse({"detail": exc.detail}, status_code=exc.status_code, headers=getattr(exc, "headers", None))

# ---------------------------------------------------------------------------
# PUBLIC PAGES
# ---------------------------------------------------------------------------
@app.get("/", response_class=HTMLResponse)
async def landing(request: Request, session: Session = Depends(header_session)):
    return render(request, "landing.html", session)


@app.post("/track")
async def track_lookup(request: Request, tracking_id: str = Form(""),
                       session: Session = Depends(header_session)):
    tracking_id = tracking_id.strip()
    if not tracking_id:
        return render(request, "landing.html", session, message="Please enter your tracking ID.")
    return redirect(f"/track/{quote(tracking_id, safe='')}")


@app.get("/track/{tracking_id}", response_class=HTMLResponse)
async def track_page(request: Request, tracking_id: str,
                     session: Session = Depends(header_session), api: PortalAPI = Depends(get_api)):
    grievance, error = None, None
    try:
        grievance = await api.track_grievance(tracking_id)
    except APIError as e:
        error = e.message
    return render(request, "track.html", session, tracking_id=tracking_id, grievance=grievance, error=error)


@app.get("/health")
async def health():
    return {"status": "healthy", "system": "Citizen Grievance Portal",
            "api": API_BASE_URL, "timestamp": datetime.now(timezone.utc)}

# ---------------------------------------------------------------------------
# AUTH PAGES
# ---------------------------------------------------------------------------
@app.get("/citizen/login", response_class=HTMLResponse)
async def citizen_login_page(request: Request, session: Session = Depends(header_session)):
    return render(request, "citizen_login.html", session, email="", otp_sent=False)


@app.post("/citizen/login/otp", response_class=HTMLResponse)
@limiter.limit(LOGIN_RATE_LIMIT)
async def citizen_send_otp(request: Request, email: str = Form(""),
                           session: Session = Depends(header_session), api: PortalAPI = Depends(get_api)):
    email = email.strip()
    if not is_valid_email(email):
        return render(request, "citizen_login.html", session, email=email, otp_sent=False,
                      message="Please enter a valid email address.")
    try:
        await api.send_otp(email)
    except APIError as e:
        return render(request, "citizen_login.html", session, email=email, otp_sent=False, message=e.message)
    return render(request, "citizen_login.html", session, email=email, otp_sent=True,
                  message="An OTP has been sent to your email.")


@app.post("/citizen/login", response_class=HTMLResponse)
@limiter.limit(LOGIN_RATE_LIMIT)
async def citizen_verify_otp(request: Request, email: str = Form(""), otp: str = Form(""),
                             session: Session = Depends(header_session), api: PortalAPI = Depends(get_api)):
    email, otp = email.strip(), otp.strip()
    if not is_valid_email(email):
        return render(request, "citizen_login.html", session, email=email, otp_sent=False,
                      message="Please enter a valid email address.")
    if not otp:
        return render(request, "citizen_login.html", session, email=email, otp_sent=True,
                      message="Please enter the OTP sent to your email.")
    try:
        await api.verify_otp(email, otp)
    except APIError as e:
        return render(request, "citizen_login.html", session, email=email, otp_sent=True, message=e.message)
    session.sign_in(UserRole.CITIZEN, email, email)
    logger.info("Citizen %s signed in", email)
    return redirect("/citizen/dashboard")


@app.get("/officer/login", response_class=HTMLResponse)
async def officer_login_page(request: Request, session: Session = Depends(header_session)):
    return render(request, "officer_login.html", session, email="")


@app.post("/officer/login", response_class=HTMLResponse)
@limiter.limit(LOGIN_RATE_LIMIT)
async def officer_login(request: Request, email: str = Form(""), password: str = Form(""),
                        session: Session = Depends(header_session), api: PortalAPI = Depends(get_api)):
    email = email.strip()
    if not email or not password:
        return render(request, "officer_login.html", session, email=email,
                      message="Please fill in all fields")
    try:
        user_type, user = await api.officer_login(email, password)
    except APIError as e:
        return render(request, "officer_login.html", session, email=email, message=e.message)
    role = UserRole(user_type)
    session.sign_in(role, user.name, user.email or email)
    logger.info("%s %s signed in", role.value.title(), session.user_email)
    return redirect(HOME_BY_ROLE[role.value])


@app.post("/logout")
async def logout(request: Request, api: PortalAPI = Depends(get_api)):
    session = get_session(request)
    try:
        await api.logout()
    except APIError:
        logger.warning("Remote logout failed for %s; clearing local session anyway", session.user_email)
    session.clear()
    return redirect("/")

# ---------------------------------------------------------------------------
# CITIZEN PAGES
# ---------------------------------------------------------------------------
@app.get("/citizen/dashboard", response_class=HTMLResponse)
async def citizen_dashboard(request: Request,
                            session: Session = Depends(require_role(UserRole.CITIZEN)),
                            api: PortalAPI = Depends(get_api)):
    email, grievances, error = "", [], None
    try:
        email, grievances = await api.user_complaints()
    except APIError as e:
        error = e.message
    display_name = (email or session.user_email or "").split("@")[0]
    return render(request, "citizen_dashboard.html", session, grievances=grievances,
                  stats=grievance_stats(grievances), display_name=display_name, error=error)


@app.get("/submit", response_class=HTMLResponse)
async def submit_page(request: Request,
                      session: Session = Depends(require_role(UserRole.CITIZEN, redirect_to="/citizen/login"))):
    return render(request, "submit.html", session, form=GrievanceForm(), categories=GRIEVANCE_CATEGORIES)


@app.post("/submit", response_class=HTMLResponse)
async def submit_grievance(
    request: Request,
    category: str = Form(""), title: str = Form(""), description: str = Form(""),
    street: str = Form(""), city: str = Form(""), district: str = Form(""),
    state: str = Form(""), postal_code: str = Form(""),
    attachments: Optional[UploadFile] = File(None),
    session: Session = Depends(require_role(UserRole.CITIZEN, redirect_to="/citizen/login")),
    api: PortalAPI = Depends(get_api),
):
    form = GrievanceForm(category=category, title=title, description=description, street=street,
                         city=city, district=district, state=state, postal_code=postal_code)
    error = form.first_error()
    attachment = None
    if error is None and attachments is not None and attachments.filename:
        content = await attachments.read()
        error = citizen_attachment_error(attachments.filename, len(content))
        if error is None:
            suffix = Path(attachments.filename).suffix.lower()
            attachment = (attachments.filename, content,
                          attachments.content_type or CITIZEN_ATTACHMENT_TYPES[suffix])
    if error:
        return render(request, "submit.html", session, form=form, categories=GRIEVANCE_CATEGORIES,
                      message=error)
    try:
        tracking_id = await api.submit_complaint(form, attachment)
    except APIError as e:
        return render(request, "submit.html", session, form=form, categories=GRIEVANCE_CATEGORIES,
                      message=e.message)
    logger.info("Grievance %s submitted by %s", tracking_id, session.user_email)
    return render(request, "submit_success.html", session, tracking_id=tracking_id)

# ---------------------------------------------------------------------------
# OFFICER PAGES
# ---------------------------------------------------------------------------
@app.get("/officer/dashboard", response_class=HTMLResponse)
async def officer_dashboard(request: Request,
                            session: Session = Depends(require_role(UserRole.OFFICER)),
                            api: PortalAPI = Depends(get_api)):
    grievances, error = [], None
    try:
        grievances = await api.officer_dashboard()
    except APIError as e:
        error = e.message
    return render(request, "officer_dashboard.html", session, grievances=grievances, error=error)


async def _render_grievance_detail(request: Request, session: Session, api: PortalAPI,
                                   grievance_id: str, message: Optional[str] = None):
    grievance, error = None, None
    try:
        grievance = await api.officer_grievance(grievance_id)
    except APIError as e:
        error = e.message
    return render(request, "officer_grievance.html", session, grievance_id=grievance_id,
                  grievance=grievance, error=error, message=message,
                  update_statuses=[(s.value, s.value.replace("_", " ").title()) for s in UpdateStatus])


@app.get("/officer/grievance/{grievance_id}", response_class=HTMLResponse)
async def officer_grievance(request: Request, grievance_id: str,
                            session: Session = Depends(require_role(UserRole.OFFICER)),
                            api: PortalAPI = Depends(get_api)):
    return await _render_grievance_detail(request, session, api, grievance_id)


@app.post("/officer/grievance/{grievance_id}", response_class=HTMLResponse)
async def officer_submit_update(
    request: Request, grievance_id: str,
    update_status: str = Form(""), notes: str = Form(""),
    evidence: Optional[UploadFile] = File(None),
    session: Session = Depends(require_role(UserRole.OFFICER)),
    api: PortalAPI = Depends(get_api),
):
    upload = None
    if evidence is not None and evidence.filename:
        upload = (evidence.filename, await evidence.read(),
                  evidence.content_type or "application/octet-stream")
    form = StatusUpdateForm(status=update_status, notes=notes, has_evidence=upload is not None)
    error = form.first_error()
    if error is None and upload is not None:
        error = evidence_attachment_error(upload[0])
    if error:
        return await _render_grievance_detail(request, session, api, grievance_id, message=error)
    try:
        await api.submit_update(grievance_id, form.status, form.notes.strip(), upload)
    except APIError as e:
        return await _render_grievance_detail(request, session, api, grievance_id, message=e.message)
    logger.info("Officer %s set %s to %s", session.user_email, grievance_id, form.status)
    session.flash = "Update submitted successfully"
    return redirect("/officer/dashboard")


@app.get("/officer/analytics", response_class=HTMLResponse)
async def officer_analytics(request: Request,
                            session: Session = Depends(require_role(UserRole.OFFICER)),
                            api: PortalAPI = Depends(get_api)):
    summary, error = None, None
    try:
        summary = workload_summary(await api.officer_dashboard())
    except APIError as e:
        error = e.message
    return render(request, "officer_analytics.html", session, summary=summary, error=error)

# ---------------------------------------------------------------------------
# ADMIN PAGES
# ---------------------------------------------------------------------------
async def _load_admin_board(api: PortalAPI):
    try:
        return await api.admin_board(), None
    except APIError as e:
        return None, e.message


def _render_admin_board(request: Request, session: Session, board, error: Optional[str], view: str,
                        message: Optional[str] = None):
    view = view if view in ("pending", "all") else "pending"
    return render(request, "admin_dashboard.html", session, board=board, view=view,
                  error=error, message=message)


@app.get("/admin/dashboard", response_class=HTMLResponse)
async def admin_dashboard(request: Request, view: str = "pending",
                          session: Session = Depends(require_role(UserRole.ADMIN)),
                          api: PortalAPI = Depends(get_api)):
    board, error = await _load_admin_board(api)
    return _render_admin_board(request, session, board, error, view)


@app.post("/admin/assign", response_class=HTMLResponse)
async def admin_assign(request: Request, grievance_id: str = Form(""), officer_name: str = Form(""),
                       view: str = Form("pending"),
                       session: Session = Depends(require_role(UserRole.ADMIN)),
                       api: PortalAPI = Depends(get_api)):
    grievance_id, officer_name = grievance_id.strip(), officer_name.strip()
    board, error = await _load_admin_board(api)
    if not officer_name:
        return _render_admin_board(request, session, board, error, view,
                                   message="Please select an officer to assign.")
    try:
        await api.assign(grievance_id, officer_name)
    except APIError as e:
        return _render_admin_board(request, session, board, error, view, message=e.message)
    logger.info("Admin %s assigned %s to %s", session.user_email, grievance_id, officer_name)
    # The lists predate the assignment; apply it locally
    if board is not None:
        board.apply_assignment(grievance_id, officer_name)
    elif error:
        logger.warning("Admin board unavailable after assigning %s: %s", grievance_id, error)
    return _render_admin_board(request, session, board, None, view,
                               message=f"Grievance {grievance_id} assigned to {officer_name}.")


@app.get("/admin/analytics", response_class=HTMLResponse)
async def admin_analytics(request: Request,
                          session: Session = Depends(require_role(UserRole.ADMIN)),
                          api: PortalAPI = Depends(get_api)):
    report, error = None, None
    try:
        report = await api.analytics()
    except APIError as e:
        error = e.message
    return render(request, "admin_analytics.html", session, report=report, error=error)


def main():
    uvicorn.run(app, host=HOST, port=PORT)


if __name__ == "__main__":
    main()
