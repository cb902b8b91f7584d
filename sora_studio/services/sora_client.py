"""
Client for the OpenAI Videos API (Sora).

Thin async wrapper over the provider's /videos endpoints. Calls go through the
ServiceGateway for timeout, concurrency and circuit breaking; nothing is
retried here. Provider failures are translated into the error taxonomy in
sora_studio.errors.
"""
import asyncio
from typing import Any, Dict, List, Optional, Tuple, Type

import httpx

from sora_studio.config import Settings
from sora_studio.errors import (
    AppError,
    NotFoundError,
    NotReadyError,
    SourceNotCompletedError,
    UpstreamError,
)
from sora_studio.schemas.video import VideoJob, VideoOptions, VideoModel
from sora_studio.services.gateway import CircuitOpenError, ServiceGateway
from sora_studio.utils.logger import get_logger

logger = get_logger("sora_client")

SERVICE_NAME = "sora"


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200] or response.reason_phrase
    error = data.get("error") if isinstance(data, dict) else None
    if isinstance(error, dict):
        return error.get("message") or response.reason_phrase
    return str(error or response.reason_phrase)


def _looks_unfinished(message: str) -> bool:
    lowered = message.lower()
    return "not completed" in lowered or "not ready" in lowered or "still processing" in lowered


class SoraClient:
    """Async client for video create/status/list/delete/remix/download"""

    def __init__(self, settings: Settings, gateway: ServiceGateway, http_client: Optional[httpx.AsyncClient] = None):
        headers = {
            "Authorization": f"Bearer {settings.openai_api_key}",
            "Content-Type": "application/json",
        }
        if settings.openai_org_id:
            headers["OpenAI-Organization"] = settings.openai_org_id
        if settings.openai_project_id:
            headers["OpenAI-Project"] = settings.openai_project_id

        self._gateway = gateway
        self._http = http_client or httpx.AsyncClient(
            base_url=settings.openai_base_url,
            headers=headers,
            timeout=settings.upstream_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def create(self, prompt: str, options: Optional[VideoOptions] = None) -> VideoJob:
        """Start a new generation job"""
        payload: Dict[str, Any] = {"model": VideoModel.SORA_2.value, "prompt": prompt}
        if options:
            payload.update(options.as_payload())

        logger.info(f"[SoraClient] Creating video: \"{prompt[:50]}\" ({payload.get('model')})")
        data = await self._call("POST", "/videos", json=payload)
        video = VideoJob.model_validate(data)
        logger.info("[SoraClient] Video created", extra={"job_id": video.id, "new_status": video.status.value})
        return video

    async def get_status(self, video_id: str) -> VideoJob:
        data = await self._call("GET", f"/videos/{video_id}")
        return VideoJob.model_validate(data)

    async def list(self, limit: int = 20, after: Optional[str] = None) -> Tuple[List[VideoJob], bool]:
        """List provider-side jobs, newest first. Returns (videos, has_more)."""
        params: Dict[str, Any] = {"limit": limit}
        if after:
            params["after"] = after
        data = await self._call("GET", "/videos", params=params)
        videos = [VideoJob.model_validate(item) for item in data.get("data", [])]
        return videos, bool(data.get("has_more", False))

    async def delete(self, video_id: str) -> Dict[str, Any]:
        data = await self._call("DELETE", f"/videos/{video_id}")
        logger.info("[SoraClient] Video deleted upstream", extra={"job_id": video_id})
        return data

    async def remix(self, source_id: str, prompt: str) -> VideoJob:
        """Create a new job derived from a completed one"""
        logger.info(f"[SoraClient] Remixing {source_id}: \"{prompt[:50]}\"")
        data = await self._call(
            "POST",
            f"/videos/{source_id}/remix",
            json={"prompt": prompt},
            unfinished_error=SourceNotCompletedError,
        )
        return VideoJob.model_validate(data)

    async def download(self, video_id: str, variant: str = "video") -> bytes:
        """Fetch rendered content (mp4 by default, or thumbnail/spritesheet)"""
        response = await self._send(
            "GET",
            f"/videos/{video_id}/content",
            params={"variant": variant},
            unfinished_error=NotReadyError,
        )
        return response.content

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        response = await self._send(method, path, **kwargs)
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(UpstreamError.UNAVAILABLE, f"Invalid JSON from provider on {path}") from exc

    async def _send(
        self,
        method: str,
        path: str,
        unfinished_error: Optional[Type[AppError]] = None,
        **kwargs,
    ) -> httpx.Response:
        try:
            return await self._gateway.execute(
                SERVICE_NAME, self._request, method, path, unfinished_error, **kwargs
            )
        except CircuitOpenError as exc:
            raise UpstreamError(UpstreamError.UNAVAILABLE, str(exc)) from exc
        except asyncio.TimeoutError as exc:
            raise UpstreamError(UpstreamError.UNAVAILABLE, f"Provider timed out on {method} {path}") from exc

    async def _request(
        self,
        method: str,
        path: str,
        unfinished_error: Optional[Type[AppError]],
        **kwargs,
    ) -> httpx.Response:
        try:
            response = await self._http.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise UpstreamError(UpstreamError.UNAVAILABLE, f"Provider timed out on {method} {path}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamError(UpstreamError.UNAVAILABLE, f"Provider unreachable: {exc}") from exc

        if response.is_success:
            return response

        status = response.status_code
        message = _error_message(response)
        logger.warning(
            f"[SoraClient] Provider error on {method} {path}: {message}",
            extra={"status": status, "service": SERVICE_NAME},
        )

        if status == 404:
            raise NotFoundError(f"Video not found upstream: {path}")
        if unfinished_error and (status == 409 or (status == 400 and _looks_unfinished(message))):
            raise unfinished_error()
        if status in (400, 422):
            raise UpstreamError(UpstreamError.INVALID_PARAMETERS, message, status)
        if status in (401, 403):
            raise UpstreamError(UpstreamError.AUTHENTICATION_FAILED, message, status)
        if status == 429:
            raise UpstreamError(UpstreamError.RATE_LIMITED, message, status)
        raise UpstreamError(UpstreamError.UNAVAILABLE, message, status)
