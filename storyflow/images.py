"""Image generation clients.

One strategy is chosen at startup (IMAGE_BACKEND) and injected into the
image flow:

    DisabledImageClient — image generation switched off; always "".
    Txt2ImgClient       — synchronous single call, Stable Diffusion WebUI
                          (POST /sdapi/v1/txt2img).
    QueuedImageClient   — submit-then-poll, ComfyUI-style
                          (POST /prompt, GET /history/{id}, GET /view).

Every client returns base64-encoded PNG data, or "" when disabled.
"""

from __future__ import annotations

import asyncio
import base64
import copy
import logging
from typing import TYPE_CHECKING, Any, Protocol

import httpx
from pydantic import BaseModel

from storyflow.errors import ProviderFailure, ProviderTimeout
from storyflow.retry import retry

if TYPE_CHECKING:
    from storyflow.config import Settings

logger = logging.getLogger(__name__)


class ImageRequest(BaseModel):
    prompt: str
    negative_prompt: str = ""
    width: int = 512
    height: int = 512
    steps: int = 20


class ImageGenerator(Protocol):
    async def generate_image(self, request: ImageRequest) -> str: ...


async def _request(
    method: str,
    url: str,
    *,
    timeout: float,
    backend: str,
    **kwargs: Any,
) -> httpx.Response:
    """Send one HTTP request, mapping httpx errors onto ProviderFailure."""
    try:
        async with httpx.AsyncClient(timeout=timeout) as client:
            resp = await client.request(method, url, **kwargs)
            resp.raise_for_status()
    except httpx.TimeoutException as e:
        raise ProviderTimeout(f"{backend} timed out after {timeout}s") from e
    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        raise ProviderFailure(
            f"{backend} returned HTTP {status}",
            transient=status >= 500 or status == 429,
        ) from e
    except httpx.TransportError as e:
        raise ProviderFailure(f"Cannot connect to {backend} at {url}", transient=True) from e
    return resp


def _json_body(resp: httpx.Response, backend: str) -> dict[str, Any]:
    """Decode a response body that must be a JSON object."""
    try:
        body = resp.json()
    except ValueError as e:
        raise ProviderFailure(f"{backend} returned a non-JSON body") from e
    if not isinstance(body, dict):
        raise ProviderFailure(
            f"{backend} returned {type(body).__name__} where an object was expected"
        )
    return body


# ---------------------------------------------------------------------------
# DisabledImageClient
# ---------------------------------------------------------------------------

class DisabledImageClient:
    async def generate_image(self, request: ImageRequest) -> str:
        logger.info("Image generation disabled, skipping")
        return ""

    async def check_health(self) -> bool:
        return False


# ---------------------------------------------------------------------------
# Txt2ImgClient — one blocking call per image
# ---------------------------------------------------------------------------

class Txt2ImgClient:
    """Stable Diffusion WebUI txt2img.

    Args:
        base_url:    Server root, e.g. "http://localhost:7860".
        timeout_ms:  Per-request timeout. Generation can be slow; default 60s.
        retries:     Attempts per image, including the first one.
        retry_delay: Base backoff in seconds between attempts.
    """

    def __init__(
        self,
        base_url: str,
        timeout_ms: int = 60_000,
        retries: int = 2,
        retry_delay: float = 5.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_ms / 1000
        self._retries = retries
        self._retry_delay = retry_delay

    def _payload(self, request: ImageRequest) -> dict[str, Any]:
        return {
            "prompt": request.prompt,
            "negative_prompt": request.negative_prompt,
            "width": request.width,
            "height": request.height,
            "steps": request.steps,
            "cfg_scale": 7,
            "sampler_name": "DPM++ 2M Karras",
            "seed": -1,
            "batch_size": 1,
            "n_iter": 1,
        }

    async def generate_image(self, request: ImageRequest) -> str:
        url = f"{self._base_url}/sdapi/v1/txt2img"
        logger.info("Generating image with prompt: %.100s", request.prompt)
        resp = await retry(
            lambda: _request(
                "POST", url, json=self._payload(request),
                timeout=self._timeout, backend="Stable Diffusion",
            ),
            attempts=self._retries,
            delay=self._retry_delay,
            label="txt2img",
        )
        images = _json_body(resp, "Stable Diffusion").get("images") or []
        if not isinstance(images, list) or not images or not isinstance(images[0], str):
            raise ProviderFailure("No images returned from Stable Diffusion API")
        logger.info("Image generated successfully")
        return images[0]

    async def check_health(self) -> bool:
        try:
            await _request(
                "GET", f"{self._base_url}/sdapi/v1/options",
                timeout=10.0, backend="Stable Diffusion",
            )
        except ProviderFailure as e:
            logger.warning("Stable Diffusion health check failed: %s", e)
            return False
        return True

    async def list_models(self) -> list[str]:
        try:
            resp = await _request(
                "GET", f"{self._base_url}/sdapi/v1/sd-models",
                timeout=self._timeout, backend="Stable Diffusion",
            )
        except ProviderFailure as e:
            logger.error("Failed to get models: %s", e)
            return []
        try:
            models = resp.json()
        except ValueError:
            logger.error("Failed to get models: non-JSON body")
            return []
        if not isinstance(models, list):
            return []
        return [
            m.get("title") or m.get("model_name", "")
            for m in models
            if isinstance(m, dict)
        ]


# ---------------------------------------------------------------------------
# QueuedImageClient — submit, poll, fetch
# ---------------------------------------------------------------------------

# Minimal text-to-image graph in ComfyUI's API format. Node ids are arbitrary
# but referenced by the [node_id, output_index] links below.
DEFAULT_WORKFLOW: dict[str, Any] = {
    "4": {
        "class_type": "CheckpointLoaderSimple",
        "inputs": {"ckpt_name": "v1-5-pruned-emaonly.safetensors"},
    },
    "5": {
        "class_type": "EmptyLatentImage",
        "inputs": {"width": 512, "height": 512, "batch_size": 1},
    },
    "6": {
        "class_type": "CLIPTextEncode",
        "inputs": {"text": "", "clip": ["4", 1]},
    },
    "7": {
        "class_type": "CLIPTextEncode",
        "inputs": {"text": "", "clip": ["4", 1]},
    },
    "3": {
        "class_type": "KSampler",
        "inputs": {
            "seed": 0,
            "steps": 20,
            "cfg": 7,
            "sampler_name": "dpmpp_2m",
            "scheduler": "karras",
            "denoise": 1,
            "model": ["4", 0],
            "positive": ["6", 0],
            "negative": ["7", 0],
            "latent_image": ["5", 0],
        },
    },
    "8": {
        "class_type": "VAEDecode",
        "inputs": {"samples": ["3", 0], "vae": ["4", 2]},
    },
    "9": {
        "class_type": "SaveImage",
        "inputs": {"filename_prefix": "storyflow", "images": ["8", 0]},
    },
}


class QueuedImageClient:
    """Asynchronous job queue backend.

    The job is submitted once, then its history entry is polled every
    ``poll_interval`` seconds. After ``max_polls`` polls without a terminal
    state the wait is abandoned with ProviderTimeout, so the longest wait is
    poll_interval * max_polls.
    """

    def __init__(
        self,
        base_url: str,
        timeout_ms: int = 60_000,
        poll_interval: float = 1.0,
        max_polls: int = 120,
        checkpoint: str | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout_ms / 1000
        self._poll_interval = poll_interval
        self._max_polls = max_polls
        self._checkpoint = checkpoint

    def build_workflow(self, request: ImageRequest) -> dict[str, Any]:
        graph = copy.deepcopy(DEFAULT_WORKFLOW)
        if self._checkpoint:
            graph["4"]["inputs"]["ckpt_name"] = self._checkpoint
        graph["5"]["inputs"].update(width=request.width, height=request.height)
        graph["6"]["inputs"]["text"] = request.prompt
        graph["7"]["inputs"]["text"] = request.negative_prompt
        graph["3"]["inputs"]["steps"] = request.steps
        return graph

    async def _submit(self, request: ImageRequest) -> str:
        resp = await _request(
            "POST", f"{self._base_url}/prompt",
            json={"prompt": self.build_workflow(request)},
            timeout=self._timeout, backend="image queue",
        )
        prompt_id = _json_body(resp, "image queue").get("prompt_id")
        if not prompt_id or not isinstance(prompt_id, str):
            raise ProviderFailure("Image queue did not return a prompt_id")
        return prompt_id

    async def _poll(self, prompt_id: str) -> dict[str, Any]:
        """Wait for the job's terminal history entry and return its first image."""
        for _ in range(self._max_polls):
            resp = await _request(
                "GET", f"{self._base_url}/history/{prompt_id}",
                timeout=self._timeout, backend="image queue",
            )
            entry = _json_body(resp, "image queue").get(prompt_id)
            if entry and not isinstance(entry, dict):
                raise ProviderFailure(f"Image job {prompt_id} has a malformed history entry")
            if entry:
                status = entry.get("status")
                if not isinstance(status, dict):
                    status = {}
                if status.get("status_str") == "error":
                    raise ProviderFailure(f"Image job {prompt_id} failed")
                outputs = entry.get("outputs")
                if not isinstance(outputs, dict):
                    outputs = {}
                for output in outputs.values():
                    if not isinstance(output, dict):
                        continue
                    images = output.get("images") or []
                    if isinstance(images, list) and images:
                        if not isinstance(images[0], dict):
                            raise ProviderFailure(
                                f"Image job {prompt_id} returned a malformed image reference"
                            )
                        return images[0]
                if status.get("completed"):
                    raise ProviderFailure(f"Image job {prompt_id} finished without images")
            await asyncio.sleep(self._poll_interval)
        raise ProviderTimeout(
            f"Image job {prompt_id} not finished after "
            f"{self._max_polls * self._poll_interval:.0f}s"
        )

    async def _fetch(self, image: dict[str, Any]) -> bytes:
        resp = await _request(
            "GET", f"{self._base_url}/view",
            params={
                "filename": image.get("filename", ""),
                "subfolder": image.get("subfolder", ""),
                "type": image.get("type", "output"),
            },
            timeout=self._timeout, backend="image queue",
        )
        return resp.content

    async def generate_image(self, request: ImageRequest) -> str:
        logger.info("Queueing image with prompt: %.100s", request.prompt)
        prompt_id = await self._submit(request)
        logger.debug("image job submitted id=%s", prompt_id)
        image = await self._poll(prompt_id)
        data = await self._fetch(image)
        logger.info("Image job %s done, %d bytes", prompt_id, len(data))
        return base64.b64encode(data).decode("ascii")

    async def check_health(self) -> bool:
        try:
            await _request(
                "GET", f"{self._base_url}/system_stats",
                timeout=10.0, backend="image queue",
            )
        except ProviderFailure as e:
            logger.warning("Image queue health check failed: %s", e)
            return False
        return True


def make_image_client(
    settings: Settings,
) -> DisabledImageClient | Txt2ImgClient | QueuedImageClient:
    """Build the image strategy named by settings.image_backend."""
    backend = settings.image_backend
    if backend == "txt2img":
        return Txt2ImgClient(settings.image_url, timeout_ms=settings.image_timeout_ms)
    if backend == "queued":
        return QueuedImageClient(
            settings.image_url,
            timeout_ms=settings.image_timeout_ms,
            poll_interval=settings.image_poll_interval,
            max_polls=settings.image_max_polls,
            checkpoint=settings.image_checkpoint or None,
        )
    return DisabledImageClient()
