"""
Remote enhancement client
Submits images to a job-based inference service (Replicate-style prediction API),
polls until a terminal state and downloads the results.
Network errors are never raised: every failure comes back as a RemoteResult.
"""
import asyncio
import base64
import io
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import httpx
from PIL import Image

from headshots.core.config import Settings, settings as default_settings
from headshots.models.remote import RemoteResult

logger = logging.getLogger(__name__)


def _error_detail(exc: Exception) -> str:
    """Best human-readable message for an httpx failure"""
    if isinstance(exc, httpx.HTTPStatusError):
        try:
            body = exc.response.json()
            if isinstance(body, dict) and body.get("detail"):
                return str(body["detail"])
        except ValueError:
            pass
        return f"HTTP {exc.response.status_code}"
    return str(exc) or exc.__class__.__name__


def _first_output(output: Any) -> Optional[str]:
    if isinstance(output, str):
        return output
    if isinstance(output, list) and output:
        return _first_output(output[0])
    if isinstance(output, dict):
        for value in output.values():
            found = _first_output(value)
            if found:
                return found
    return None


def encode_image(image_path: str, max_dimension: int) -> str:
    """
    Encode an image file as a data URI.
    Images larger than max_dimension on either side are downscaled first.
    """
    path = Path(image_path)
    data = path.read_bytes()

    with Image.open(io.BytesIO(data)) as img:
        mime = "image/png" if img.format == "PNG" else "image/jpeg"
        if max(img.size) > max_dimension:
            original_size = img.size
            img = img.copy()
            img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
            buffer = io.BytesIO()
            if mime == "image/png":
                img.save(buffer, format="PNG")
            else:
                img.convert("RGB").save(buffer, format="JPEG", quality=95)
            data = buffer.getvalue()
            logger.info(f"Downscaled {path.name} from {original_size} to {img.size} for upload")

    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


class RemoteEnhancementClient:
    """
    Client for remote enhancement jobs.

    Rate limiting is cooperative: the client remembers when it last submitted
    and sleeps before the next submission. No lock is taken, so one instance
    must be used sequentially.
    """

    def __init__(
        self,
        api_key: str,
        config: Optional[Settings] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._config = config or default_settings
        self._api_key = api_key
        self._base_url = self._config.REMOTE_BASE_URL.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=self._config.REMOTE_REQUEST_TIMEOUT_SECONDS)
        self._sleep = sleep
        self._clock = clock
        self._last_submission: Optional[float] = None

    async def __aenter__(self) -> "RemoteEnhancementClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    @property
    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._api_key}"}

    async def test_connection(self) -> RemoteResult:
        """Check that the credential is accepted"""
        try:
            response = await self._client.get(f"{self._base_url}/models", headers=self._headers, timeout=10.0)
            response.raise_for_status()
            return RemoteResult.ok()
        except httpx.HTTPError as e:
            return RemoteResult.failure(_error_detail(e))

    async def _wait_for_rate_limit(self) -> None:
        if self._last_submission is None:
            return
        elapsed = self._clock() - self._last_submission
        remaining = self._config.MIN_REQUEST_INTERVAL_SECONDS - elapsed
        if remaining > 0:
            logger.debug(f"Rate limit: waiting {remaining:.2f}s before next submission")
            await self._sleep(remaining)

    async def _image_payload(self, image_path: str) -> str:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, encode_image, image_path, self._config.MAX_UPLOAD_DIMENSION)

    async def run_prediction(self, version: str, model_input: Dict[str, Any]) -> RemoteResult:
        """Submit one prediction and wait for its terminal state"""
        await self._wait_for_rate_limit()
        self._last_submission = self._clock()
        try:
            response = await self._client.post(
                f"{self._base_url}/predictions",
                json={"version": version, "input": model_input},
                headers=self._headers,
            )
            response.raise_for_status()
            poll_url = response.json()["urls"]["get"]
            if not isinstance(poll_url, str):
                raise TypeError(f"poll URL is {poll_url!r}")
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            logger.warning(f"Prediction submission failed: {_error_detail(e)}")
            return RemoteResult.failure(_error_detail(e))
        except (KeyError, TypeError, ValueError) as e:
            return RemoteResult.failure(f"Unexpected response from enhancement service: {e}")

        return await self.wait_for_prediction(poll_url)

    async def wait_for_prediction(self, poll_url: str) -> RemoteResult:
        """Poll a prediction until it succeeds, fails or the attempt budget runs out"""
        for _ in range(self._config.MAX_POLL_ATTEMPTS):
            try:
                response = await self._client.get(poll_url, headers=self._headers)
                response.raise_for_status()
                data = response.json()
            except (httpx.HTTPError, httpx.InvalidURL) as e:
                return RemoteResult.failure(_error_detail(e))
            except ValueError as e:
                return RemoteResult.failure(f"Unexpected response from enhancement service: {e}")
            if not isinstance(data, dict):
                return RemoteResult.failure(f"Unexpected response from enhancement service: {data!r}")

            status = data.get("status")
            if status == "succeeded":
                url = _first_output(data.get("output"))
                if not url:
                    return RemoteResult.failure("Prediction succeeded without an output")
                return RemoteResult.ok(url)
            if status in ("failed", "canceled"):
                return RemoteResult.failure(data.get("error") or "Prediction failed")

            await self._sleep(self._config.POLL_INTERVAL_SECONDS)

        return RemoteResult.failure("Timeout waiting for prediction")

    async def _submit_image(self, image_path: str, version: str, image_field: str, **params) -> RemoteResult:
        try:
            payload = await self._image_payload(image_path)
        except OSError as e:
            return RemoteResult.failure(f"Could not read {image_path}: {e}")
        return await self.run_prediction(version, {image_field: payload, **params})

    async def enhance_face(self, image_path: str, fidelity: float) -> RemoteResult:
        """Face restoration; lower fidelity means a stronger effect"""
        return await self._submit_image(
            image_path,
            self._config.FACE_MODEL_VERSION,
            "image",
            codeformer_fidelity=fidelity,
            upscale=1,
            face_upsample=True,
            background_enhance=False,
        )

    async def smooth_skin(self, image_path: str, fidelity: float) -> RemoteResult:
        return await self._submit_image(
            image_path,
            self._config.SKIN_MODEL_VERSION,
            "image",
            codeformer_fidelity=fidelity,
            upscale=1,
            face_upsample=False,
            background_enhance=False,
        )

    async def upscale(self, image_path: str, scale: int) -> RemoteResult:
        return await self._submit_image(
            image_path,
            self._config.UPSCALE_MODEL_VERSION,
            "image",
            scale=scale,
            face_enhance=False,
        )

    async def remove_background(self, image_path: str) -> RemoteResult:
        """Returns the URL of a transparent PNG"""
        return await self._submit_image(image_path, self._config.BACKGROUND_MODEL_VERSION, "image")

    async def download(self, url: str, output_path: str) -> RemoteResult:
        """Fetch a result URL into output_path"""
        try:
            response = await self._client.get(url, timeout=self._config.DOWNLOAD_TIMEOUT_SECONDS)
            response.raise_for_status()
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return RemoteResult.failure(_error_detail(e))

        try:
            Path(output_path).write_bytes(response.content)
        except OSError as e:
            return RemoteResult.failure(f"Could not write {output_path}: {e}")
        return RemoteResult.ok(url)
