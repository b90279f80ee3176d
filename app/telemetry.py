"""Lightweight telemetry utilities for recording recommendation exposures."""
from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Mapping, Optional, Union

from config.settings import EXPOSURE_LOG_PATH

LOGGER = logging.getLogger(__name__)
_LOCK = threading.Lock()


def record_exposure(
    *,
    request_id: str,
    user_id: Optional[str],
    variant: Optional[str],
    algorithm: Optional[str],
    items: Iterable[Mapping[str, object]],
    context: Optional[Mapping[str, object]] = None,
    path: Optional[Path] = None,
) -> None:
    """Append a single exposure event to the local JSONL log."""
    target = Path(path) if path is not None else EXPOSURE_LOG_PATH
    payload = {
        "request_id": request_id,
        "user_id": user_id,
        "variant": variant,
        "algorithm": algorithm,
        "items": list(items),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if context:
        payload["context"] = dict(context)

    target.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(payload, ensure_ascii=False, default=str)
    with _LOCK:
        with target.open("a", encoding="utf-8") as stream:
            stream.write(line + "\n")
    LOGGER.debug("Recorded exposure %s", request_id)


class JsonlExposureSink:
    """Exposure sink for the engine that writes each served list to a JSONL file."""

    def __init__(self, path: Union[str, Path, None] = None):
        self.path = Path(path) if path is not None else EXPOSURE_LOG_PATH

    def __call__(
        self,
        *,
        request_id: str,
        user_id: Optional[str],
        variant: Optional[str],
        algorithm: Optional[str],
        items: Iterable[Mapping[str, object]],
        context: Optional[Mapping[str, object]] = None,
    ) -> None:
        record_exposure(
            request_id=request_id,
            user_id=user_id,
            variant=variant,
            algorithm=algorithm,
            items=items,
            context=context,
            path=self.path,
        )


__all__ = ["JsonlExposureSink", "record_exposure"]
