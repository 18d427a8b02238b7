"""Hugging Face Hub downloads with progress reporting."""

from __future__ import annotations

import fnmatch
import logging
import os
from typing import Callable

logger = logging.getLogger(__name__)

# Called from the download thread with (files_done, files_total).
DownloadProgress = Callable[[int, int], None]


def split_gguf_id(model_id: str) -> tuple[str, str] | None:
    """Split ``org/repo/filename-glob`` into ``(repo_id, pattern)``.

    Returns None for local paths and for ids that are not three-part hub
    references.
    """
    if os.path.exists(model_id):
        return None
    parts = model_id.split("/")
    if len(parts) < 3:
        return None
    repo_id = "/".join(parts[:2])
    pattern = "/".join(parts[2:])
    if not pattern:
        return None
    return repo_id, pattern


def _make_tqdm_class(on_progress: DownloadProgress | None):
    from tqdm.auto import tqdm

    class _ProgressTqdm(tqdm):
        """tqdm that forwards file-count progress instead of drawing a bar."""

        def __init__(self, *args, **kwargs):
            kwargs["disable"] = True
            kwargs.setdefault("mininterval", 0)
            super().__init__(*args, **kwargs)
            # A disabled tqdm does not advance `n`, so count here.
            self._done = 0
            self._report()

        def update(self, n=1):
            self._done += n or 0
            self._report()
            return super().update(n)

        def _report(self) -> None:
            if on_progress is None or not self.total:
                return
            on_progress(min(int(self._done), int(self.total)), int(self.total))

    return _ProgressTqdm


def download_gguf(
    model_id: str,
    *,
    cache_dir: str | None = None,
    on_progress: DownloadProgress | None = None,
) -> str:
    """Resolve a llamacpp model id to a local ``.gguf`` file, downloading if needed."""
    if os.path.isfile(model_id):
        return model_id

    split = split_gguf_id(model_id)
    if split is None:
        raise FileNotFoundError(
            f"Not a local .gguf file or an 'org/repo/filename' hub reference: {model_id!r}"
        )
    repo_id, pattern = split

    from huggingface_hub import snapshot_download

    logger.info("Downloading %s (%s) from the Hub", repo_id, pattern)
    local_dir = snapshot_download(
        repo_id,
        allow_patterns=[pattern],
        cache_dir=cache_dir,
        tqdm_class=_make_tqdm_class(on_progress),
    )

    matches: list[str] = []
    for root, _dirs, files in os.walk(local_dir):
        for name in files:
            rel = os.path.relpath(os.path.join(root, name), local_dir)
            if fnmatch.fnmatch(rel, pattern) or fnmatch.fnmatch(name, pattern):
                matches.append(os.path.join(root, name))
    if not matches:
        raise FileNotFoundError(f"No file matching {pattern!r} in {repo_id}")

    matches.sort()
    # Split GGUFs load from their first shard.
    return matches[0]


# Weight formats the transformers backend never reads.
_SNAPSHOT_IGNORE = ["*.gguf", "*.onnx", "onnx/*", "*.h5", "*.msgpack", "*.ot", "*.tflite", "*.mlmodel"]


def download_snapshot(
    repo_id: str,
    *,
    cache_dir: str | None = None,
    on_progress: DownloadProgress | None = None,
) -> str:
    """Fetch a transformers checkpoint from the Hub and return its local directory.

    Local directories are returned unchanged.
    """
    if os.path.isdir(repo_id):
        return repo_id

    from huggingface_hub import snapshot_download

    logger.info("Downloading %s from the Hub", repo_id)
    return snapshot_download(
        repo_id,
        cache_dir=cache_dir,
        ignore_patterns=_SNAPSHOT_IGNORE,
        tqdm_class=_make_tqdm_class(on_progress),
    )
