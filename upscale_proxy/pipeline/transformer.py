"""
Upscale + Resize Transform

Two-stage pipeline run against the raw artifact:
1. Upscale - RealESRGAN (ncnn-vulkan build) by a fixed factor
2. Resize  - ImageMagick, forced to the exact target dimensions, in place

Both tools are opaque collaborators invoked with an argument list, never
through a shell. The intermediate image lives in a per-call work
directory that is always removed; only the final bytes leave this module.
"""

import io
import shutil
import subprocess
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from PIL import Image, UnidentifiedImageError

from upscale_proxy.core.exceptions import TransformError, TransformErrorKind
from upscale_proxy.core.logging import get_logger, LogContext
from upscale_proxy.core.metrics import track_stage_latency

logger = get_logger(__name__)

# Tail of the tool output kept for diagnostics
MAX_DIAGNOSTIC_CHARS = 4000


@dataclass
class PendingTransform:
    """Working state of one transform call. Never persisted."""

    raw_path: Path
    width: int
    height: int
    work_dir: Path

    @property
    def intermediate_path(self) -> Path:
        return self.work_dir / "upscaled.jpg"


class Transformer(ABC):
    """Turns a raw artifact into bytes at exactly width x height."""

    def __init__(self, work_dir: Optional[Path] = None):
        self.work_dir = Path(work_dir) if work_dir else None

    def transform(self, raw_path: Path, width: int, height: int) -> bytes:
        """
        Run the upscale and resize stages.

        Raises:
            TransformError: with kind UPSCALE_FAILED or RESIZE_FAILED.
        """
        try:
            if self.work_dir:
                self.work_dir.mkdir(parents=True, exist_ok=True)
            work_dir = Path(tempfile.mkdtemp(prefix="transform-", dir=self.work_dir))
        except OSError as e:
            raise TransformError(
                f"Could not create transform work directory: {e}",
                kind=TransformErrorKind.UPSCALE_FAILED
            ) from e
        pending = PendingTransform(Path(raw_path), width, height, work_dir)
        start_time = datetime.utcnow()

        try:
            with LogContext(stage="upscale"):
                with track_stage_latency("upscale"):
                    self.upscale(pending)
            with LogContext(stage="resize"):
                with track_stage_latency("resize"):
                    self.resize(pending)

            try:
                data = pending.intermediate_path.read_bytes()
            except OSError as e:
                raise TransformError(
                    f"Resized image is unreadable: {e}",
                    kind=TransformErrorKind.RESIZE_FAILED
                ) from e
        finally:
            shutil.rmtree(work_dir, ignore_errors=True)

        duration_ms = int((datetime.utcnow() - start_time).total_seconds() * 1000)
        logger.info(
            "transform_completed",
            width=width,
            height=height,
            output_size=len(data),
            duration_ms=duration_ms
        )
        return data

    @abstractmethod
    def upscale(self, pending: PendingTransform):
        """Write the upscaled image to pending.intermediate_path."""
        pass

    @abstractmethod
    def resize(self, pending: PendingTransform):
        """Resize pending.intermediate_path in place."""
        pass


def _diagnostic(stdout: Optional[bytes], stderr: Optional[bytes]) -> str:
    text = b"".join(part for part in (stdout, stderr) if part)
    return text.decode("utf-8", errors="replace")[-MAX_DIAGNOSTIC_CHARS:]


class SubprocessTransformer(Transformer):
    """Runs the external upscaler and resize tools."""

    def __init__(
        self,
        upscaler_bin: str,
        upscaler_model: str = "realesrgan-x4plus",
        upscale_factor: int = 4,
        resize_bin: str = "convert",
        resize_force_exact: bool = True,
        timeout: Optional[float] = 600.0,
        work_dir: Optional[Path] = None
    ):
        super().__init__(work_dir)
        self.upscaler_bin = upscaler_bin
        self.upscaler_model = upscaler_model
        self.upscale_factor = upscale_factor
        self.resize_bin = resize_bin
        self.resize_force_exact = resize_force_exact
        self.timeout = timeout

    def upscale_command(self, pending: PendingTransform) -> List[str]:
        return [
            self.upscaler_bin,
            "-i", str(pending.raw_path),
            "-o", str(pending.intermediate_path),
            "-n", self.upscaler_model,
            "-f", "jpg",
            "-s", str(self.upscale_factor),
        ]

    def resize_command(self, pending: PendingTransform) -> List[str]:
        geometry = f"{pending.width}x{pending.height}"
        if self.resize_force_exact:
            geometry += "!"
        path = str(pending.intermediate_path)
        return [self.resize_bin, path, "-resize", geometry, path]

    def _run(self, command: List[str], kind: TransformErrorKind):
        logger.debug("transform_command", command=command)

        try:
            result = subprocess.run(
                command,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=self.timeout,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            output = _diagnostic(e.stdout, e.stderr)
            logger.error("transform_timeout", kind=kind.value, timeout=self.timeout, output=output)
            raise TransformError(
                f"{command[0]} timed out after {self.timeout}s",
                kind=kind,
                output=output
            ) from e
        except OSError as e:
            logger.error("transform_exec_failed", kind=kind.value, error=str(e))
            raise TransformError(
                f"Could not execute {command[0]}: {e}",
                kind=kind
            ) from e

        output = _diagnostic(result.stdout, result.stderr)
        if result.returncode != 0:
            logger.error(
                "transform_tool_failed",
                kind=kind.value,
                returncode=result.returncode,
                output=output
            )
            raise TransformError(
                f"{command[0]} exited with code {result.returncode}",
                kind=kind,
                returncode=result.returncode,
                output=output
            )
        return output

    def upscale(self, pending: PendingTransform):
        output = self._run(self.upscale_command(pending), TransformErrorKind.UPSCALE_FAILED)
        if not pending.intermediate_path.is_file():
            raise TransformError(
                "Upscaler did not produce an output file",
                kind=TransformErrorKind.UPSCALE_FAILED,
                returncode=0,
                output=output
            )

    def resize(self, pending: PendingTransform):
        output = self._run(self.resize_command(pending), TransformErrorKind.RESIZE_FAILED)
        if not pending.intermediate_path.is_file():
            raise TransformError(
                "Resize tool removed its output file",
                kind=TransformErrorKind.RESIZE_FAILED,
                returncode=0,
                output=output
            )


class SimulatedTransformer(Transformer):
    """Pillow based transform for development without GPU or external tools."""

    def __init__(self, upscale_factor: int = 4, work_dir: Optional[Path] = None):
        super().__init__(work_dir)
        self.upscale_factor = upscale_factor

    def upscale(self, pending: PendingTransform):
        logger.info("upscale_simulated_starting", input=str(pending.raw_path))
        try:
            with Image.open(pending.raw_path) as image:
                image = image.convert("RGB")
                new_size = (image.width * self.upscale_factor, image.height * self.upscale_factor)
                output_image = image.resize(new_size, Image.Resampling.LANCZOS)
            output_image.save(pending.intermediate_path, format="JPEG", quality=95)
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise TransformError(
                f"Simulated upscale failed: {e}",
                kind=TransformErrorKind.UPSCALE_FAILED,
                output=str(e)
            ) from e

    def resize(self, pending: PendingTransform):
        try:
            with Image.open(pending.intermediate_path) as image:
                output_image = image.resize((pending.width, pending.height), Image.Resampling.LANCZOS)
            buffer = io.BytesIO()
            output_image.save(buffer, format="JPEG", quality=95)
            pending.intermediate_path.write_bytes(buffer.getvalue())
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise TransformError(
                f"Simulated resize failed: {e}",
                kind=TransformErrorKind.RESIZE_FAILED,
                output=str(e)
            ) from e
