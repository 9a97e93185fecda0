import inspect
from typing import Any, Callable

from fastapi import Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse, Response
from starlette.concurrency import run_in_threadpool


def require_request_param(handler: Callable) -> None:
    if "request" not in inspect.signature(handler).parameters:
        raise TypeError(f"{handler.__name__} must declare a 'request: Request' parameter")


def find_request(handler: Callable, args: tuple, kwargs: dict) -> Request:
    request = kwargs.get("request")
    if isinstance(request, Request):
        return request
    for value in args:
        if isinstance(value, Request):
            return value
    raise TypeError(f"{handler.__name__} was called without a Request")


async def call_handler(handler: Callable, *args: Any, **kwargs: Any) -> Response:
    """Run a sync or async endpoint and always hand back a Response."""
    if inspect.iscoroutinefunction(handler):
        result = await handler(*args, **kwargs)
    else:
        result = await run_in_threadpool(handler, *args, **kwargs)
    if isinstance(result, Response):
        return result
    return JSONResponse(jsonable_encoder(result))
