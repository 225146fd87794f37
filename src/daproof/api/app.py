# src/daproof/api/app.py
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, FastAPI, Request, Response
from fastapi.responses import JSONResponse

from daproof import __version__
from daproof.api.errors import ApiError
from daproof.api.request_log import RequestLogMiddleware
from daproof.metrics import format_prometheus

router = APIRouter()


def _node(request: Request) -> Any:
    node = getattr(request.app.state, "node", None)
    if node is None:
        raise ApiError.internal("not_ready", "verifier node not attached to app.state", {})
    return node


@router.get("/health")
def health(request: Request) -> dict:
    node = _node(request)
    st = node.status()
    return {"ok": st.get("state") == "RUNNING", "version": __version__, **st}


@router.get("/metrics")
def metrics() -> Response:
    """Prometheus-style metrics."""
    return Response(content=format_prometheus(), media_type="text/plain")


@router.get("/v1/results/{submission_id}")
def get_result(submission_id: str, request: Request) -> dict:
    node = _node(request)
    res = node.store.get_result(submission_id)
    if res is None:
        raise ApiError.not_found("not_found", "no terminal result for submission", {"submission_id": submission_id})
    return {"ok": True, "result": res.to_json()}


def create_app(node: Any = None) -> FastAPI:
    """Read-only status API for a running VerifierNode.

    `node` needs `status()` and `store.get_result()`; tests pass a real node
    built over in-process fakes.
    """
    app = FastAPI(title="DA Proof Verifier", docs_url=None, redoc_url=None, openapi_url=None)
    app.state.node = node

    @app.exception_handler(ApiError)
    async def _api_error(_request: Request, exc: ApiError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.envelope())

    app.add_middleware(RequestLogMiddleware)
    app.include_router(router)
    return app
