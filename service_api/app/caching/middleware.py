"""
GET response caching for FastAPI route handlers.
"""

import functools
import inspect
import json
from typing import Any, Callable, Dict, Optional

from fastapi import HTTPException, Request, Response
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from shared.errors import FixiaException
from shared.logging import get_logger
from .response_cache import ResponseCache


_MISSING = object()

VaryBy = Callable[[Request], Optional[str]]


class ResponseCacheMiddleware:
    """Wraps route handlers so GET responses are served from a ResponseCache.

    The cache instance is injected; the service that builds this object owns
    it for the lifetime of the process. Usage::

        @router.get("/api/categories")
        @response_cache.cached(ttl=300)
        async def list_categories(request: Request):
            ...

    Cache keys are the request path plus the raw query string, so parameter
    order matters and every distinct query gets its own entry.
    """

    def __init__(self, cache: ResponseCache, default_ttl: Optional[int] = None):
        self.cache = cache
        self.default_ttl = default_ttl if default_ttl is not None else cache.default_ttl
        self.logger = get_logger("api.cache_middleware")

    @staticmethod
    def build_key(request: Request, vary_by: Optional[VaryBy] = None) -> str:
        """Cache key for a request: ``path[?query][#vary]``."""
        key = request.url.path
        query = request.url.query
        if query:
            key = f"{key}?{query}"

        if vary_by is not None:
            suffix = vary_by(request)
            if suffix is not None:
                key = f"{key}#{suffix}"
        return key

    def cached(self, ttl: Optional[int] = None, vary_by: Optional[VaryBy] = None):
        """Decorate a route handler that takes a ``Request`` parameter.

        ``vary_by`` appends a per-request discriminator to the key, for
        responses that differ by caller rather than by URL. Errors raised by
        the handler on a miss still leave with the MISS headers.
        """
        ttl_seconds = self.default_ttl if ttl is None else ttl

        def decorator(handler: Callable[..., Any]):
            signature = inspect.signature(handler)
            request_param = next(
                (name for name, param in signature.parameters.items() if param.annotation is Request),
                None,
            )
            if request_param is None:
                raise TypeError(f"{handler.__name__} must accept a Request parameter to be cached")

            @functools.wraps(handler)
            async def wrapper(*args, **kwargs):
                request: Request = kwargs[request_param]

                if request.method != "GET":
                    return await self._call(handler, args, kwargs)

                key = self.build_key(request, vary_by)
                cached_body = self._safe_get(key)
                if cached_body is not _MISSING:
                    response = JSONResponse(content=cached_body)
                    self._apply_headers(response, "HIT", ttl_seconds)
                    return response

                try:
                    result = await self._call(handler, args, kwargs)
                except FixiaException as exc:
                    exc.headers.update(self._cache_headers("MISS", ttl_seconds))
                    raise
                except HTTPException as exc:
                    exc.headers = {**(exc.headers or {}), **self._cache_headers("MISS", ttl_seconds)}
                    raise
                return self._finalize(key, result, ttl_seconds)

            wrapper.__signature__ = signature
            return wrapper

        return decorator

    def invalidate(self, *patterns: str) -> int:
        """Invalidate each key family; failures are logged, never raised."""
        removed = 0
        for pattern in patterns:
            try:
                removed += self.cache.invalidate_by_pattern(pattern)
            except Exception as exc:
                self.logger.error("Cache invalidation error", pattern=pattern, error=str(exc))
        return removed

    @staticmethod
    async def _call(handler: Callable[..., Any], args, kwargs) -> Any:
        result = handler(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result

    def _finalize(self, key: str, result: Any, ttl: int) -> Response:
        """Turn the handler result into the outgoing response, storing 200 bodies."""
        if isinstance(result, Response):
            response = result
            body = self._decode_body(key, response) if response.status_code == 200 else _MISSING
        else:
            body = jsonable_encoder(result)
            response = JSONResponse(content=body)

        if response.status_code == 200 and body is not _MISSING:
            self._safe_set(key, body, ttl)

        self._apply_headers(response, "MISS", ttl)
        return response

    def _decode_body(self, key: str, response: Response) -> Any:
        try:
            return json.loads(response.body)
        except (AttributeError, TypeError, ValueError) as exc:
            self.logger.warning("Response body is not cacheable JSON", key=key, error=str(exc))
            return _MISSING

    def _safe_get(self, key: str) -> Any:
        try:
            return self.cache.get(key, _MISSING)
        except Exception as exc:
            self.logger.error("Cache fetch error", key=key, error=str(exc))
            return _MISSING

    def _safe_set(self, key: str, body: Any, ttl: int) -> None:
        try:
            self.cache.set(key, body, ttl)
        except Exception as exc:
            self.logger.error("Cache store error", key=key, error=str(exc))

    @staticmethod
    def _cache_headers(state: str, ttl: int) -> Dict[str, str]:
        return {"X-Cache": state, "Cache-Control": f"public, max-age={int(ttl)}"}

    @classmethod
    def _apply_headers(cls, response: Response, state: str, ttl: int) -> None:
        response.headers.update(cls._cache_headers(state, ttl))
