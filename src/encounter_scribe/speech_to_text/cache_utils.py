"""Cache and output directory helpers."""

from datetime import datetime
from pathlib import Path


def get_cache_root(cache_name: str | None = None) -> Path:
    """
    Get the root cache directory for encounter-scribe.

    Args:
        cache_name: Optional subdirectory name within the cache root

    Returns:
        Path to the cache directory (created if missing)
    """
    cache_root = Path.home() / ".cache" / "encounter_scribe"

    if cache_name:
        cache_root = cache_root / cache_name

    cache_root.mkdir(parents=True, exist_ok=True)

    return cache_root


def get_models_cache_dir() -> Path:
    """Get the models cache directory."""
    return get_cache_root("models")


def get_whisper_cache_dir() -> Path:
    """Get the Whisper models cache directory."""
    return get_models_cache_dir() / "whisper"


def get_recordings_dir() -> Path:
    """Get the default directory for exported session recordings."""
    return get_cache_root("recordings")


def default_recording_path(session_id: str | None = None) -> Path:
    """Build a timestamped WAV path inside the recordings directory."""
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    suffix = f"_{session_id[:8]}" if session_id else ""
    return get_recordings_dir() / f"encounter_{stamp}{suffix}.wav"


def get_cache_size(cache_path: Path) -> int:
    """
    Get the total size of a cache directory in bytes.

    Args:
        cache_path: Path to the cache directory

    Returns:
        Total size in bytes
    """
    if not cache_path.exists():
        return 0

    total_size = 0
    try:
        for item in cache_path.rglob("*"):
            if item.is_file():
                total_size += item.stat().st_size
    except OSError:
        pass

    return total_size


def format_cache_size(size_bytes: int) -> str:
    """
    Format cache size in human-readable format.

    Args:
        size_bytes: Size in bytes

    Returns:
        Formatted size string
    """
    if size_bytes == 0:
        return "0 B"

    units = ["B", "KB", "MB", "GB", "TB"]
    size = float(size_bytes)
    unit_index = 0

    while size >= 1024 and unit_index < len(units) - 1:
        size /= 1024
        unit_index += 1

    return f"{size:.1f} {units[unit_index]}"
