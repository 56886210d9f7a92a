from __future__ import annotations

import math
from typing import Any

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse


def envelope(data: Any = None, message: str | None = None, *, status_code: int = 200, success: bool = True) -> JSONResponse:
    body: dict[str, Any] = {'success': success, 'data': data, 'message': message}
    return JSONResponse(status_code=status_code, content=jsonable_encoder(body))


def error_envelope(message: str, *, status_code: int) -> JSONResponse:
    return envelope(None, message, status_code=status_code, success=False)


def pagination_block(*, page: int, limit: int, total: int) -> dict:
    return {
        'current_page': page,
        'total_pages': math.ceil(total / limit) if limit else 0,
        'total_items': total,
        'items_per_page': limit,
    }
