"""Baselines stored as PNG files on the local filesystem."""

from __future__ import annotations

import asyncio
import logging
import shutil
import time
from pathlib import Path
from typing import Union

from src.comparison.image_utils import file_sha256, image_dimensions
from src.models.baseline import BaselineMetadata, BaselineResult, FetchBaselineOptions
from src.models.config import BaselineSource

from .errors import BaselineNotFoundError

logger = logging.getLogger(__name__)


class LocalProvider:
    name = "local"

    def __init__(self, base_dir: str | Path | None = None):
        self.base_dir = Path(base_dir) if base_dir else Path.cwd()

    def resolve(self, source: Union[str, BaselineSource]) -> Path:
        raw = source if isinstance(source, str) else source.source
        path = Path(raw)
        return path if path.is_absolute() else (self.base_dir / path).resolve()

    async def fetch(self, options: FetchBaselineOptions) -> BaselineResult:
        src = self.resolve(options.source)
        logger.debug("Fetching baseline: %s -> %s", src, options.output_path)

        if not src.exists():
            return BaselineResult(
                path=options.output_path,
                success=False,
                error=BaselineNotFoundError(f"Baseline file not found: {src}"),
            )

        try:
            metadata = await asyncio.to_thread(self._copy_and_describe, src, Path(options.output_path))
        except Exception as e:
            logger.error("Failed to fetch baseline %s: %s", src, e)
            return BaselineResult(path=options.output_path, success=False, error=e)

        logger.info(
            "Baseline fetched: %s (%dx%d)", Path(options.output_path).name,
            metadata.dimensions.width, metadata.dimensions.height,
        )
        return BaselineResult(path=options.output_path, success=True, metadata=metadata)

    async def exists(self, source: Union[str, BaselineSource]) -> bool:
        return self.resolve(source).exists()

    @staticmethod
    def _copy_and_describe(src: Path, dest: Path) -> BaselineMetadata:
        dest.parent.mkdir(parents=True, exist_ok=True)
        if not dest.exists() or not src.samefile(dest):
            shutil.copy2(src, dest)
        return BaselineMetadata(
            dimensions=image_dimensions(dest),
            hash=file_sha256(dest),
            fetched_at=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        )
