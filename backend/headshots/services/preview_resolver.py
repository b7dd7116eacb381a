"""
Working-image resolution for RAW sources
A chain of strategies, tried in order; each returns a ResolvedPreview or None.
"""
import asyncio
import logging
import platform
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from PIL import Image

logger = logging.getLogger(__name__)

RAW_EXTENSIONS = {".rw2", ".raw", ".arw", ".cr2", ".cr3", ".nef", ".orf", ".dng"}
JPEG_EXTENSIONS = (".jpg", ".JPG", ".jpeg", ".JPEG")
JPEG_SUFFIXES = {".jpg", ".jpeg"}

IMAGE_EVENTS_SCRIPT = """
tell application "Image Events"
    launch
    set theImage to open {source}
    save theImage as JPEG in {target} with compression level medium
    close theImage
end tell
"""


def is_raw(path: str) -> bool:
    return Path(path).suffix.lower() in RAW_EXTENSIONS


def _applescript_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


@dataclass
class ResolvedPreview:
    path: str
    temporary: bool = False
    strategy: str = ""


class PreviewStrategy:
    """One way of obtaining a JPEG for a RAW file"""

    name = "strategy"

    async def resolve(self, raw_path: str, work_dir: str, base_name: str) -> Optional[ResolvedPreview]:
        raise NotImplementedError


class SiblingPreviewResolver(PreviewStrategy):
    """JPEG written by the camera next to the RAW file, or in the watch folder"""

    name = "sibling"

    def __init__(self, watch_folder: Optional[str] = None):
        self.watch_folder = watch_folder

    async def resolve(self, raw_path: str, work_dir: str, base_name: str) -> Optional[ResolvedPreview]:
        source = Path(raw_path)
        for ext in JPEG_EXTENSIONS:
            candidate = source.with_suffix(ext)
            if candidate.exists():
                logger.info(f"Found JPEG next to RAW: {candidate}")
                return ResolvedPreview(str(candidate), strategy=self.name)

        if self.watch_folder:
            folder = Path(self.watch_folder)
            if folder.is_dir():
                for candidate in sorted(folder.iterdir()):
                    if candidate.suffix.lower() in JPEG_SUFFIXES and candidate.stem == source.stem:
                        logger.info(f"Found JPEG in watch folder: {candidate}")
                        return ResolvedPreview(str(candidate), strategy=self.name)
        return None


class ExternalConverterResolver(PreviewStrategy):
    """Converts the RAW file with dcraw, or sips and Image Events on macOS, when installed"""

    name = "converter"

    def __init__(self, quality: int = 95):
        self._quality = quality

    async def _run(self, *args: str, stdout=None) -> int:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=stdout if stdout is not None else asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await process.communicate()
        if process.returncode != 0:
            logger.info(f"{args[0]} exited with {process.returncode}: {stderr.decode(errors='replace').strip()}")
        return process.returncode

    async def _via_dcraw(self, raw_path: str, output_path: Path, tiff_path: Path) -> bool:
        if not shutil.which("dcraw"):
            return False
        try:
            with open(tiff_path, "wb") as tiff:
                code = await self._run("dcraw", "-w", "-q", "3", "-T", "-o", "1", "-c", raw_path, stdout=tiff)
            if code != 0 or not tiff_path.exists() or tiff_path.stat().st_size == 0:
                return False
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self._tiff_to_jpeg, tiff_path, output_path)
            return output_path.exists()
        finally:
            tiff_path.unlink(missing_ok=True)

    def _tiff_to_jpeg(self, tiff_path: Path, output_path: Path) -> None:
        with Image.open(tiff_path) as img:
            img.convert("RGB").save(output_path, format="JPEG", quality=self._quality)

    async def _via_sips(self, raw_path: str, output_path: Path) -> bool:
        if platform.system() != "Darwin" or not shutil.which("sips"):
            return False
        code = await self._run(
            "sips", "-s", "format", "jpeg", "-s", "formatOptions", str(self._quality),
            raw_path, "--out", str(output_path),
        )
        return code == 0 and output_path.exists()

    async def _via_image_events(self, raw_path: str, output_path: Path) -> bool:
        if platform.system() != "Darwin" or not shutil.which("osascript"):
            return False
        script = IMAGE_EVENTS_SCRIPT.format(
            source=_applescript_string(raw_path),
            target=_applescript_string(str(output_path)),
        )
        code = await self._run("osascript", "-e", script)
        return code == 0 and output_path.exists()

    async def resolve(self, raw_path: str, work_dir: str, base_name: str) -> Optional[ResolvedPreview]:
        output_path = Path(work_dir) / f"{base_name}_converted.jpg"
        tiff_path = Path(work_dir) / f"{base_name}_converted.tmp.tiff"

        if await self._via_dcraw(raw_path, output_path, tiff_path):
            logger.info("RAW converted via dcraw")
            return ResolvedPreview(str(output_path), temporary=True, strategy="dcraw")
        if await self._via_sips(raw_path, output_path):
            logger.info("RAW converted via sips")
            return ResolvedPreview(str(output_path), temporary=True, strategy="sips")
        if await self._via_image_events(raw_path, output_path):
            logger.info("RAW converted via Image Events")
            return ResolvedPreview(str(output_path), temporary=True, strategy="image-events")
        return None


class PreviewResolver:
    """Tries each strategy in order; non-RAW sources resolve to themselves"""

    def __init__(self, strategies: Optional[List[PreviewStrategy]] = None):
        self.strategies = strategies if strategies is not None else [
            SiblingPreviewResolver(),
            ExternalConverterResolver(),
        ]

    def set_watch_folder(self, folder: Optional[str]) -> None:
        for strategy in self.strategies:
            if isinstance(strategy, SiblingPreviewResolver):
                strategy.watch_folder = folder

    async def resolve(self, source_path: str, work_dir: str, base_name: str) -> Optional[ResolvedPreview]:
        if not is_raw(source_path):
            return ResolvedPreview(source_path, strategy="source")

        for strategy in self.strategies:
            try:
                resolved = await strategy.resolve(source_path, work_dir, base_name)
            except OSError as e:
                logger.warning(f"Preview strategy {strategy.name} failed for {source_path}: {e}")
                continue
            if resolved is not None:
                return resolved
        return None
