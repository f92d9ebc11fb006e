# dashboard.py
from html import escape
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse, PlainTextResponse
from pydantic import BaseModel, Field

from errors import JobNotFound, StoreUnavailable, ValidationError
from models import STATUSES
from submission import SCHEDULING_DISABLED

ALLOWED_ORIGINS = [
    "http://localhost:5200",
    "https://postpup-frontend.vercel.app",
]


class ScheduleRequest(BaseModel):
    # loosely typed: the submission gate owns validation and answers 400
    draft_reference: Optional[Any] = Field(default=None, alias="draftReference")
    scheduled_at_utc: Optional[Any] = Field(default=None, alias="scheduledAtUtc")
    time_zone: Optional[Any] = Field(default="UTC", alias="timeZone")
    repeat_rule: Optional[Any] = Field(default=None, alias="repeatRule")


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


# ---------- Shared UI ----------
BASE_STYLE = """
  body { font-family: Arial, sans-serif; margin: 0; background: #f9f9f9; color: #333; }
  h1 { background: #2196F3; color: white; padding: 15px; margin: 0; }
  .container { padding: 20px; }
  table { border-collapse: collapse; width: 100%; margin-top: 10px; background: white; }
  th, td { border: 1px solid #ddd; padding: 8px; text-align: left; }
  th { background-color: #2196F3; color: white; }
  .cards { display: grid; grid-template-columns: repeat(auto-fit,minmax(220px,1fr)); gap: 16px; margin-top: 20px; }
  .card { background: white; border: 1px solid #ddd; border-radius: 6px; padding: 12px; }
"""


def page(title: str, body_html: str) -> str:
    return f"""
    <html>
    <head><title>{title}</title><style>{BASE_STYLE}</style></head>
    <body>
      <h1>{title}</h1>
      <div class="container">{body_html}</div>
    </body>
    </html>
    """


def create_app(store, gate) -> FastAPI:
    app = FastAPI(title="PostPup API")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ValidationError)
    def on_validation_error(request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"error": "ValidationError", "message": str(exc)})

    @app.exception_handler(RequestValidationError)
    def on_bad_body(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": "ValidationError", "message": "Malformed request body"})

    @app.exception_handler(StoreUnavailable)
    def on_store_unavailable(request: Request, exc: StoreUnavailable):
        return JSONResponse(status_code=503, content={"error": "StoreUnavailable", "message": str(exc)})

    @app.exception_handler(JobNotFound)
    def on_not_found(request: Request, exc: JobNotFound):
        return JSONResponse(status_code=404, content={"error": "NotFound", "message": str(exc)})

    # ---------- Liveness ----------
    @app.get("/", response_class=PlainTextResponse)
    def welcome():
        return "Welcome to the PostPup API"

    @app.get("/health")
    def health():
        return {"status": "ok"}

    # ---------- Auth stub ----------
    @app.post("/api/login")
    def login(body: LoginRequest):
        if body.email and body.password:
            return {"message": "Login successful!"}
        return JSONResponse(status_code=400, content={"message": "Missing email or password."})

    # ---------- Scheduling ----------
    @app.post("/api/schedule-post")
    def schedule_post(body: ScheduleRequest):
        result = gate.submit(body.draft_reference, body.scheduled_at_utc, body.time_zone, body.repeat_rule)
        if result["status"] == SCHEDULING_DISABLED:
            return result
        return JSONResponse(status_code=201, content=result)

    @app.get("/api/jobs")
    def list_jobs(status: Optional[str] = None, limit: int = 100):
        if status and status not in STATUSES:
            raise HTTPException(status_code=400, detail=f"Unknown status {status!r}")
        return [j.to_dict() for j in store.list_jobs(status=status, limit=limit)]

    @app.get("/api/jobs/{job_id}")
    def get_job(job_id: str):
        return store.get(job_id).to_dict()

    @app.delete("/api/jobs/{job_id}")
    def cancel_job(job_id: str):
        return store.cancel(job_id).to_dict()

    @app.get("/api/analytics")
    def analytics():
        return {"jobs": store.counts_by_status()}

    # ---------- HTML views ----------
    @app.get("/dashboard", response_class=HTMLResponse)
    def home():
        rows = store.list_jobs(limit=50)
        table_html = """
        <h2>Scheduled posts</h2>
        <table>
          <tr><th>ID</th><th>Draft</th><th>Status</th><th>Scheduled (UTC)</th><th>Repeat</th><th>Attempts</th></tr>
        """
        for j in rows:
            table_html += (
                f"<tr><td><a href='/dashboard/jobs/{escape(j.id)}'>{escape(j.id)}</a></td>"
                f"<td>{escape(j.draft_reference)}</td><td>{j.status}</td><td>{j.scheduled_at_utc}</td>"
                f"<td>{escape(j.repeat_rule or '-')}</td><td>{j.attempts}/{j.max_retries}</td></tr>"
            )
        table_html += "</table>"

        counts = store.counts_by_status()
        cards = '<div class="cards">' + "".join(
            f'<div class="card"><h3>{s}</h3><p>{counts[s]}</p></div>' for s in STATUSES
        ) + "</div>"
        return page("PostPup Scheduler", cards + table_html)

    @app.get("/dashboard/jobs/{job_id}", response_class=HTMLResponse)
    def job_detail(job_id: str):
        try:
            j = store.get(job_id)
        except JobNotFound:
            return HTMLResponse(page("Job not found", f"<p>Job {escape(job_id)} not found.</p>"), status_code=404)

        duration = f"{j.duration_seconds:.3f}s" if j.duration_seconds is not None else "-"
        body = f"""
          <div class="cards">
            <div class="card"><b>Status</b><p>{j.status}</p></div>
            <div class="card"><b>Attempts</b><p>{j.attempts}/{j.max_retries}</p></div>
            <div class="card"><b>Runs</b><p>{j.run_count}</p></div>
            <div class="card"><b>Last duration</b><p>{duration}</p></div>
          </div>
          <table>
            <tr><th>Draft</th><td>{escape(j.draft_reference)}</td></tr>
            <tr><th>Scheduled (UTC)</th><td>{j.scheduled_at_utc}</td></tr>
            <tr><th>Time zone</th><td>{escape(j.time_zone)}</td></tr>
            <tr><th>Repeat</th><td>{escape(j.repeat_rule or '-')}</td></tr>
            <tr><th>Retry at</th><td>{j.next_run_at or '-'}</td></tr>
            <tr><th>Created</th><td>{j.created_at}</td></tr>
            <tr><th>Started</th><td>{j.started_at or '-'}</td></tr>
            <tr><th>Finished</th><td>{j.finished_at or '-'}</td></tr>
          </table>
          <h3>Last error</h3>
          <pre>{escape(j.last_error or '-')}</pre>
        """
        return page(f"Job {escape(j.id)}", body)

    return app
