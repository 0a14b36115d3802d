"""
HTTP front for the treehole wall.

Holds the GitHub token on the server so browsers and terminal clients running
with ``proxy.enabled`` never see a write-capable credential.

Routes:
- ``GET  /api/issues?page=N``  one page of submissions as JSON
- ``POST /api/issues``         ``{"content": "..."}`` creates a submission
- ``GET  /``                   the rendered wall
- ``GET|POST /submit``         the submission page (plain HTML form)
- ``GET  /healthz``
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Optional
from urllib.parse import parse_qs

from fastapi import FastAPI, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import HTMLResponse, JSONResponse
from pydantic import BaseModel

import treehole as th

logger = logging.getLogger(th.LOGGER_NAME)


class SubmissionIn(BaseModel):
    content: str = ""


def error_status(exc: th.TreeholeError) -> int:
    if isinstance(exc, th.ValidationError):
        return 422
    if isinstance(exc, th.TokenMissingError):
        return 503
    if isinstance(exc, th.RequestError) and exc.status and 400 <= exc.status < 600:
        return exc.status
    return 502


def _error_response(exc: th.TreeholeError) -> JSONResponse:
    return JSONResponse(status_code=error_status(exc), content={"message": str(exc)})


def create_app(cfg: th.Config, service=None, cache: Optional[th.CacheService] = None) -> FastAPI:
    """Build the proxy app.

    The proxy itself always talks to the backend directly, whatever the
    ``use_proxy`` flag of the client config says.
    """
    upstream_cfg = dataclasses.replace(cfg, use_proxy=False)
    if service is None:
        service = th.build_service(upstream_cfg)
    if cache is None:
        cache = th.CacheService(th.LocalStorage(':memory:'), upstream_cfg)

    app = FastAPI(title="treehole", description="Confession wall proxy for GitHub Issues")
    app.state.cfg = upstream_cfg
    app.state.service = service
    app.state.cache = cache

    title = f"Treehole · {upstream_cfg.repo_full_name}"

    def _controller(view: th.WallView) -> th.TreeholeController:
        return th.TreeholeController(upstream_cfg, service, cache, view)

    @app.get("/healthz")
    def healthz() -> dict:
        return {"status": "ok", "repo": upstream_cfg.repo_full_name, "backend": upstream_cfg.backend}

    @app.get("/api/issues")
    def list_issues(page: int = Query(1, ge=1)):
        try:
            items = service.get_issues(page)
        except th.TreeholeError as exc:
            logger.warning("Proxy list failed (page %d): %s", page, exc)
            return _error_response(exc)
        return [item.to_dict() for item in items]

    @app.post("/api/issues", status_code=201)
    def create_issue(payload: SubmissionIn):
        try:
            th.validate_content(payload.content)
            created = service.create_issue(payload.content)
        except th.TreeholeError as exc:
            logger.warning("Proxy create failed: %s", exc)
            return _error_response(exc)
        return created.to_dict()

    @app.get("/", response_class=HTMLResponse)
    def wall_page(page: int = Query(1, ge=1)) -> HTMLResponse:
        view = th.HtmlWallView(elements=th.LIST_ELEMENTS, page_href=lambda n: f"/?page={n}")
        _controller(view).load_secrets(page)
        return HTMLResponse(view.render_page(title=title, page=page))

    @app.get("/submit", response_class=HTMLResponse)
    def submit_page() -> HTMLResponse:
        view = th.HtmlWallView(elements=th.FORM_ELEMENTS)
        return HTMLResponse(view.render_page(title=title, form_action="/submit"))

    @app.post("/submit", response_class=HTMLResponse)
    async def submit_form(request: Request) -> HTMLResponse:
        raw = (await request.body()).decode("utf-8", errors="replace")
        text = (parse_qs(raw).get("content") or [""])[0]
        view = th.HtmlWallView(elements=th.FORM_ELEMENTS, input_text=text, targets={"view": "/"})
        await run_in_threadpool(_controller(view).handle_submit)
        return HTMLResponse(view.render_page(title=title, form_action="/submit"))

    return app
