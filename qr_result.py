"""Value types passed between the reader, the detector and the decoder."""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, NamedTuple, Optional


class BarcodeFormat(Enum):
    QR_CODE = "QR_CODE"


class ResultMetadataType(Enum):
    BYTE_SEGMENTS = "BYTE_SEGMENTS"
    ERROR_CORRECTION_LEVEL = "ERROR_CORRECTION_LEVEL"
    STRUCTURED_APPEND_SEQUENCE = "STRUCTURED_APPEND_SEQUENCE"
    STRUCTURED_APPEND_PARITY = "STRUCTURED_APPEND_PARITY"


class ResultPoint(NamedTuple):
    """A located feature of the symbol, in pixel coordinates."""
    x: float
    y: float


@dataclass(frozen=True)
class DecodeOptions:
    """
    Per-call decode options.

    try_harder / pure_barcode are tri-state: None means "not given", which
    is different from an explicit False. Keys the reader does not know about
    travel untouched in `extra`.
    """
    try_harder: Optional[bool] = None
    pure_barcode: Optional[bool] = None
    character_set: Optional[str] = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    _KNOWN = ("try_harder", "pure_barcode", "character_set")

    @classmethod
    def from_mapping(cls, hints):
        if hints is None:
            return cls()
        known = {k: hints[k] for k in cls._KNOWN if k in hints}
        extra = {k: v for k, v in hints.items() if k not in cls._KNOWN}
        return cls(extra=extra, **known)

    def with_changes(self, **changes):
        return replace(self, **changes)


@dataclass
class QRCodeDecoderMetaData:
    """Extra information the decoder attaches to a result."""
    mirrored: bool = False

    def apply_mirrored_correction(self, points):
        """Swap bottom-left and top-right when the symbol was read mirrored."""
        points = list(points)
        if self.mirrored and len(points) >= 3:
            points[0], points[2] = points[2], points[0]
        return points


@dataclass
class DecoderResult:
    text: str
    raw_bytes: bytes
    byte_segments: Optional[List[bytes]] = None
    ec_level: Optional[str] = None
    structured_append_sequence: int = -1
    structured_append_parity: int = -1
    other: Any = None

    def has_structured_append(self):
        return self.structured_append_sequence >= 0 and self.structured_append_parity >= 0


class DetectorResult(NamedTuple):
    bits: Any  # BitMatrix
    points: List[ResultPoint]


@dataclass
class DecodeResult:
    text: str
    raw_bytes: bytes
    points: List[ResultPoint]
    format: BarcodeFormat
    metadata: Dict[ResultMetadataType, Any] = field(default_factory=dict)

    def put_metadata(self, kind, value):
        self.metadata[kind] = value

    def to_dict(self):
        """JSON-friendly view, used by the web front end."""
        meta = {}
        for kind, value in self.metadata.items():
            if kind is ResultMetadataType.BYTE_SEGMENTS:
                value = [seg.hex() for seg in value]
            meta[kind.value.lower()] = value
        return {
            'text': self.text,
            'raw_bytes': self.raw_bytes.hex(),
            'points': [[p.x, p.y] for p in self.points],
            'format': self.format.value,
            'metadata': meta,
        }
