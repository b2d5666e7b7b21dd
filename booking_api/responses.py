"""
Response envelope

Success: {"data": ..., "meta": {path, method, request_id, timestamp,
          response_time_ms[, pagination]}}
Error:   {"error": {status, code, message, details, path, method,
          request_id, timestamp}}
"""
import math
import time
from typing import Any, Dict, Optional

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from .models import PaginationParams
from .utils import utcnow


def _base_meta(request: Request) -> Dict[str, Any]:
    return {
        "path": request.url.path,
        "method": request.method,
        "request_id": getattr(request.state, "request_id", None),
        "timestamp": utcnow().isoformat(),
    }


def build_meta(request: Request, pagination: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    meta = _base_meta(request)
    start_time = getattr(request.state, "start_time", None)
    meta["response_time_ms"] = (
        round((time.perf_counter() - start_time) * 1000, 2) if start_time is not None else None
    )
    if pagination is not None:
        meta["pagination"] = pagination
    return meta


def pagination_meta(request: Request, params: PaginationParams, total: int) -> Dict[str, Any]:
    """page/limit/total/sort plus absolute next/prev links carrying the same query"""
    total_pages = max(1, math.ceil(total / params.limit)) if total else 0

    carried: Dict[str, Any] = {"limit": params.limit}
    if params.sort_by:
        carried.update(sort_by=params.sort_by, sort_dir=params.sort_dir.value)

    def link(page: int) -> str:
        return str(request.url.include_query_params(page=page, **carried))

    meta = {
        "page": params.page,
        "limit": params.limit,
        "total": total,
        "total_pages": total_pages,
        "next": link(params.page + 1) if params.page < total_pages else None,
        "prev": link(params.page - 1) if params.page > 1 else None,
    }
    if params.sort_by:
        meta["sort_by"] = params.sort_by
        meta["sort_dir"] = params.sort_dir.value
    return meta


def success(
    request: Request,
    data: Any,
    status_code: int = 200,
    pagination: Optional[Dict[str, Any]] = None
) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"data": jsonable_encoder(data), "meta": build_meta(request, pagination)}
    )


def error_response(
    request: Request,
    status_code: int,
    code: str,
    message: str,
    details: Any = None,
    headers: Optional[Dict[str, str]] = None
) -> JSONResponse:
    body = {
        "status": status_code,
        "code": code,
        "message": message,
        "details": jsonable_encoder(details) if details is not None else {},
        **_base_meta(request),
    }
    return JSONResponse(status_code=status_code, content={"error": body}, headers=headers)
