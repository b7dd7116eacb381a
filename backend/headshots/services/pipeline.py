"""
Enhancement pipeline
For one job: resolve a working image, frame it per output variant, run the
remote enhancement steps in sequence and write the named outputs.
Any failing step fails the whole job; the scheduler decides about retries.
"""
import asyncio
import logging
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional

from PIL import Image

from headshots.core.config import Settings, settings as default_settings
from headshots.core.exceptions import InputError, StepFailedError
from headshots.models.enhancement import EnhancementConfig, Intensity, UpscaleFactor, Variant
from headshots.models.jobs import Job, OutputKind
from headshots.models.remote import RemoteResult
from headshots.services.crop_engine import CropEngine, FaceGeometry
from headshots.services.preview_resolver import PreviewResolver, is_raw
from headshots.services.remote_client import RemoteEnhancementClient

logger = logging.getLogger(__name__)

OUTPUT_KINDS = {
    Variant.PORTRAIT: (OutputKind.PORTRAIT_JPEG, OutputKind.PORTRAIT_PNG, OutputKind.PORTRAIT_COLOR),
    Variant.SQUARE: (OutputKind.SQUARE_JPEG, OutputKind.SQUARE_PNG, OutputKind.SQUARE_COLOR),
}

LogCallback = Callable[[str, str], None]


def output_paths(output_folder: str, base_name: str, variant: Variant) -> Dict[OutputKind, str]:
    """Final output file names for one variant"""
    folder = Path(output_folder)
    jpeg_kind, png_kind, color_kind = OUTPUT_KINDS[variant]
    return {
        jpeg_kind: str(folder / f"{base_name}_{variant.suffix}.jpg"),
        png_kind: str(folder / f"{base_name}_{variant.suffix}_transparent.png"),
        color_kind: str(folder / f"{base_name}_{variant.suffix}_bg.jpg"),
    }


def _save_jpeg(source_path: str, output_path: str, quality: int) -> None:
    with Image.open(source_path) as img:
        img.convert("RGB").save(output_path, format="JPEG", quality=quality)


def _downscale_copy(source_path: str, output_path: str, max_dimension: int, quality: int) -> None:
    with Image.open(source_path) as img:
        img = img.convert("RGB")
        if max(img.size) > max_dimension:
            img.thumbnail((max_dimension, max_dimension), Image.Resampling.LANCZOS)
        img.save(output_path, format="JPEG", quality=quality)


def _composite_on_color(png_path: str, output_path: str, rgb, quality: int) -> None:
    with Image.open(png_path) as foreground:
        foreground = foreground.convert("RGBA")
        background = Image.new("RGB", foreground.size, rgb)
        background.paste(foreground, mask=foreground.split()[3])
        background.save(output_path, format="JPEG", quality=quality)


class EnhancementPipeline:
    """Runs one job through crop, enhancement, upscaling and background removal"""

    def __init__(
        self,
        client_factory: Optional[Callable[[str], RemoteEnhancementClient]] = None,
        crop_engine: Optional[CropEngine] = None,
        preview_resolver: Optional[PreviewResolver] = None,
        config: Optional[Settings] = None,
        log: Optional[LogCallback] = None,
    ):
        self._config = config or default_settings
        self._client_factory = client_factory or (lambda api_key: RemoteEnhancementClient(api_key, self._config))
        self._crop_engine = crop_engine or CropEngine(self._config)
        self.preview_resolver = preview_resolver or PreviewResolver()
        self._log_callback = log

    def _log(self, message: str, level: str = "info") -> None:
        getattr(logger, level)(message)
        if self._log_callback:
            self._log_callback(level, message)

    async def _in_executor(self, func, *args):
        """
        Run blocking work in the default executor.
        A worker thread cannot be interrupted, so on cancellation this waits
        for it to return before propagating; the job keeps its slot until then.
        """
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(None, func, *args)
        try:
            return await asyncio.shield(future)
        except asyncio.CancelledError:
            while not future.done():
                try:
                    await asyncio.wait([future])
                except asyncio.CancelledError:
                    continue
            if not future.cancelled() and future.exception() is not None:
                logger.info(f"Interrupted step raised after cancellation: {future.exception()}")
            raise

    async def run(self, job: Job, enhancement: EnhancementConfig, api_key: str) -> Dict[OutputKind, str]:
        """
        Process one job and return its output paths.
        Outputs are also recorded on job.outputs as each file lands.
        Raises InputError or StepFailedError.
        """
        if not Path(job.source_path).exists():
            raise InputError("Source file not found")

        variants = enhancement.variants
        if not variants:
            raise InputError("No output formats enabled. Enable at least Portrait or Square in settings.")

        Path(job.output_folder).mkdir(parents=True, exist_ok=True)

        preview = await self.preview_resolver.resolve(job.source_path, job.output_folder, job.base_name)
        if preview is None:
            raise InputError(
                "No JPEG available and RAW conversion failed. Please enable JPEG+RAW mode on camera, "
                "or install dcraw for RAW processing."
            )
        if is_raw(job.source_path):
            self._log(f"Using {preview.strategy} preview for {Path(job.source_path).name}")

        results: Dict[OutputKind, str] = {}
        try:
            self._log(f"Detecting face: {job.base_name}")
            try:
                geometry = await self._in_executor(self._crop_engine.detect_face, preview.path)
            except OSError as e:
                raise StepFailedError("face detection", str(e)) from e

            async with self._client_factory(api_key) as client:
                for variant in variants:
                    variant_outputs = await self._run_variant(client, job, enhancement, preview.path, geometry, variant)
                    results.update(variant_outputs)
        finally:
            if preview.temporary:
                Path(preview.path).unlink(missing_ok=True)

        self._log(f"Processing complete: {job.base_name}")
        return results

    async def _remote_step(
        self,
        client: RemoteEnhancementClient,
        step: str,
        variant: Variant,
        submission: Awaitable[RemoteResult],
        destination: str,
    ) -> str:
        result = await submission
        if not result.success:
            raise StepFailedError(step, result.error or "unknown error", variant.value)
        downloaded = await client.download(result.url, destination)
        if not downloaded.success:
            raise StepFailedError(f"{step} download", downloaded.error or "unknown error", variant.value)
        return destination

    def _should_smooth(self, skin: Intensity, applied_fidelity: Optional[float]) -> bool:
        if skin is Intensity.OFF:
            return False
        if applied_fidelity is None:
            return True
        delta = abs(self._config.SKIN_FIDELITY[skin.value] - applied_fidelity)
        return delta >= self._config.SKIN_SMOOTHING_MIN_DELTA

    async def _run_variant(
        self,
        client: RemoteEnhancementClient,
        job: Job,
        enhancement: EnhancementConfig,
        working_path: str,
        geometry: FaceGeometry,
        variant: Variant,
    ) -> Dict[OutputKind, str]:
        folder = Path(job.output_folder)
        prefix = f"{job.base_name}_{variant.suffix}"
        temp_files: List[Path] = []

        def temp(step: str) -> str:
            path = folder / f"{prefix}_{step}.tmp.jpg"
            temp_files.append(path)
            return str(path)

        names = output_paths(job.output_folder, job.base_name, variant)
        jpeg_kind, png_kind, color_kind = OUTPUT_KINDS[variant]
        produced: Dict[OutputKind, str] = {}

        try:
            current = temp("crop")
            try:
                await self._in_executor(self._crop_engine.crop_and_correct, working_path, current, geometry, variant)
            except OSError as e:
                raise StepFailedError("crop", str(e), variant.value) from e

            applied_fidelity = None
            if enhancement.face_enhancement is not Intensity.OFF:
                fidelity = self._config.FACE_FIDELITY[enhancement.face_enhancement.value]
                self._log(f"Enhancing face ({variant.value}, {enhancement.face_enhancement.value})...")
                current = await self._remote_step(
                    client, "face enhancement", variant, client.enhance_face(current, fidelity), temp("face")
                )
                applied_fidelity = fidelity

            if self._should_smooth(enhancement.skin_smoothing, applied_fidelity):
                fidelity = self._config.SKIN_FIDELITY[enhancement.skin_smoothing.value]
                self._log(f"Smoothing skin ({variant.value}, {enhancement.skin_smoothing.value})...")
                current = await self._remote_step(
                    client, "skin smoothing", variant, client.smooth_skin(current, fidelity), temp("skin")
                )
            elif enhancement.skin_smoothing is not Intensity.OFF:
                self._log(f"Skipping skin smoothing ({variant.value}): same strength as face enhancement")

            if enhancement.upscale is not UpscaleFactor.OFF:
                upload = temp("upscale_input")
                await self._in_executor(
                    _downscale_copy, current, upload,
                    self._config.UPSCALE_INPUT_MAX_DIMENSION, self._config.JPEG_QUALITY,
                )
                self._log(f"Upscaling {enhancement.upscale.value} ({variant.value})...")
                current = await self._remote_step(
                    client, "upscale", variant, client.upscale(upload, enhancement.upscale.scale), temp("upscaled")
                )

            try:
                await self._in_executor(_save_jpeg, current, names[jpeg_kind], self._config.JPEG_QUALITY)
            except OSError as e:
                raise StepFailedError("save", str(e), variant.value) from e
            produced[jpeg_kind] = job.outputs[jpeg_kind] = names[jpeg_kind]

            if enhancement.background_removal:
                self._log(f"Removing background ({variant.value})...")
                await self._remote_step(
                    client, "background removal", variant,
                    client.remove_background(names[jpeg_kind]), names[png_kind],
                )
                produced[png_kind] = job.outputs[png_kind] = names[png_kind]

                rgb = enhancement.background_rgb
                if rgb is not None:
                    try:
                        await self._in_executor(
                            _composite_on_color, names[png_kind], names[color_kind], rgb, self._config.JPEG_QUALITY
                        )
                    except OSError as e:
                        raise StepFailedError("background colour", str(e), variant.value) from e
                    produced[color_kind] = job.outputs[color_kind] = names[color_kind]
        finally:
            for path in temp_files:
                path.unlink(missing_ok=True)

        return produced
