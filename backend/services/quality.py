"""
Video quality analysis.

Pure functions that turn raw resource metadata into a quality summary and
a menu of playback options. No I/O.
"""
import math
from dataclasses import dataclass, asdict
from typing import Dict, List, Optional

# Recommended bitrates in Mbps per resolution tier (YouTube upload guidance).
# Tunable; each tier must keep high > medium > low.
BITRATE_THRESHOLDS: Dict[int, Dict[str, float]] = {
    2160: {"high": 35, "medium": 20, "low": 10},
    1440: {"high": 16, "medium": 10, "low": 6},
    1080: {"high": 8, "medium": 5, "low": 3},
    720: {"high": 5, "medium": 3, "low": 1.5},
    480: {"high": 2.5, "medium": 1.5, "low": 0.8},
    360: {"high": 1, "medium": 0.6, "low": 0.3},
}

BITRATE_LEVELS = {
    "high": {"level": "high", "label": "High Quality", "color": "#22c55e"},
    "medium": {"level": "medium", "label": "Medium Quality", "color": "#eab308"},
    "low": {"level": "low", "label": "Low Quality", "color": "#ef4444"},
}

# (max dimension, label), checked top down
RESOLUTION_LABELS = [
    (3840, "4K Ultra HD"),
    (2560, "1440p QHD"),
    (1920, "1080p Full HD"),
    (1280, "720p HD"),
    (854, "480p SD"),
    (640, "360p"),
    (426, "240p"),
]

# (id, label, target height, target bitrate in bits/s)
QUALITY_PRESETS = [
    ("1080p", "1080p Full HD", 1080, 8_000_000),
    ("720p", "720p HD", 720, 5_000_000),
    ("480p", "480p SD", 480, 2_500_000),
    ("360p", "360p", 360, 1_000_000),
]

CODECS = {
    "video/mp4": "H.264/AVC",
    "video/webm": "VP8/VP9",
    "video/x-matroska": "H.264/H.265",
    "video/quicktime": "H.264",
    "video/x-msvideo": "Various",
    "video/mpeg": "MPEG-2",
    "video/3gpp": "H.263/H.264",
}


@dataclass(frozen=True)
class QualityOption:
    id: str
    label: str
    width: int
    height: int
    bitrate: int
    is_original: bool
    description: str = ""

    def to_dict(self) -> dict:
        data = asdict(self)
        return {
            "id": data["id"],
            "label": data["label"],
            "width": data["width"],
            "height": data["height"],
            "bitrate": data["bitrate"],
            "bitrateLabel": f"{data['bitrate'] / 1_000_000:.1f} Mbps",
            "isOriginal": data["is_original"],
            "description": data["description"],
        }


def _as_int(value) -> int:
    """Metadata numbers often arrive as strings; anything unusable is 0."""
    if value is None:
        return 0
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        return 0
    return max(number, 0)


def get_resolution_label(width: int, height: int) -> str:
    max_dimension = max(width, height)
    for threshold, label in RESOLUTION_LABELS:
        if max_dimension >= threshold:
            return label
    if max_dimension > 0:
        return f"{width}×{height}"
    return "Unknown"


def calculate_bitrate(byte_size: int, duration_millis: int) -> int:
    """
    Average bitrate in bits per second.

    This is size over duration, so container overhead and audio tracks are
    counted in. Good enough for a quality hint, not a codec measurement.
    """
    if duration_millis <= 0:
        return 0
    return round(byte_size * 8 / (duration_millis / 1000))


def classify_bitrate(bitrate: int, height: int, thresholds: Optional[Dict[int, Dict[str, float]]] = None) -> dict:
    """Rate a bitrate against the tier at or below the given height."""
    thresholds = thresholds or BITRATE_THRESHOLDS
    bitrate_mbps = bitrate / 1_000_000

    tiers = sorted(thresholds, reverse=True)
    tier = next((t for t in tiers if height >= t), tiers[-1])
    limits = thresholds[tier]

    if bitrate_mbps >= limits["high"]:
        return dict(BITRATE_LEVELS["high"])
    if bitrate_mbps >= limits["medium"]:
        return dict(BITRATE_LEVELS["medium"])
    return dict(BITRATE_LEVELS["low"])


def detect_codec(mime_type: Optional[str]) -> str:
    if not mime_type:
        return "Unknown"
    return CODECS.get(mime_type, mime_type.replace("video/", "").upper())


def generate_quality_options(source_width: int, source_height: int, source_bitrate: int) -> List[QualityOption]:
    """
    Build the playback menu: the original first, then every preset that
    does not upscale the source. Preset bitrates are capped at the source's.
    """
    options = [
        QualityOption(
            id="original",
            label="Original",
            width=source_width,
            height=source_height,
            bitrate=source_bitrate,
            is_original=True,
            description=f"{source_width}×{source_height} • Source quality",
        )
    ]

    if source_height <= 0:
        return options

    aspect_ratio = source_width / source_height if source_width > 0 else 16 / 9
    for preset_id, label, target_height, target_bitrate in QUALITY_PRESETS:
        if target_height > source_height:
            continue
        target_width = int(math.floor(target_height * aspect_ratio + 0.5))
        options.append(QualityOption(
            id=preset_id,
            label=label,
            width=target_width,
            height=target_height,
            bitrate=min(target_bitrate, source_bitrate),
            is_original=False,
            description=f"{target_width}×{target_height} • Optimized for bandwidth",
        ))

    return options


def format_duration(ms: int) -> str:
    if not ms or ms <= 0:
        return "Unknown"

    seconds = ms // 1000
    hours = seconds // 3600
    minutes = (seconds % 3600) // 60
    secs = seconds % 60

    if hours > 0:
        return f"{hours}:{minutes:02d}:{secs:02d}"
    return f"{minutes}:{secs:02d}"


def format_file_size(size: int) -> str:
    if not size or size <= 0:
        return "Unknown"

    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    unit_index = 0
    while value >= 1024 and unit_index < len(units) - 1:
        value /= 1024
        unit_index += 1

    return f"{value:.2f} {units[unit_index]}"


def analyze_video_quality(
    width=0,
    height=0,
    duration_millis=0,
    byte_size=0,
    mime_type: Optional[str] = None,
) -> dict:
    """
    Summarize a video's quality from its raw metadata.

    Any numeric field may be missing, zero or a numeric string.
    """
    width = _as_int(width)
    height = _as_int(height)
    duration_millis = _as_int(duration_millis)
    byte_size = _as_int(byte_size)

    bitrate = calculate_bitrate(byte_size, duration_millis)
    bitrate_mbps = round(bitrate / 1_000_000, 2)

    return {
        "width": width,
        "height": height,
        "resolution": get_resolution_label(width, height),
        "durationMs": duration_millis,
        "durationFormatted": format_duration(duration_millis),
        "bitrate": bitrate,
        "bitrateMbps": bitrate_mbps,
        "bitrateLabel": f"{bitrate_mbps:.2f} Mbps",
        "bitrateQuality": classify_bitrate(bitrate, height),
        "codec": detect_codec(mime_type),
        "fileSize": byte_size,
        "fileSizeFormatted": format_file_size(byte_size),
        "qualityOptions": [option.to_dict() for option in generate_quality_options(width, height, bitrate)],
    }
