#!/usr/bin/env python3.11
"""
QR Code Reader
Usage: python3.11 qr_reader.py <image_path> [--pure] [--fast] [--charset=NAME] [--debug]

  --pure           skip finder detection, treat the image as a bare symbol
  --fast           do not force the higher-effort search
  --charset=NAME   character set for byte segments without an ECI
  --debug          save intermediate images to <image>_debug/
"""

import logging
import os
import sys
from typing import NamedTuple, Optional

import cv2

import qr_debug
from bit_matrix import BitMatrix
from pure_bits import extract_pure_bits
from qr_decode import Decoder
from qr_detect import detect
from qr_errors import ReaderError
from qr_result import (BarcodeFormat, DecodeOptions, DecodeResult,
                       QRCodeDecoderMetaData, ResultMetadataType)

logger = logging.getLogger(__name__)


class DecodeOutcome(NamedTuple):
    """Either a result or the error that ended the attempt."""
    result: Optional[DecodeResult] = None
    error: Optional[ReaderError] = None

    @property
    def ok(self):
        return self.error is None

    def unwrap(self):
        if self.error is not None:
            raise self.error
        return self.result


class QRCodeReader:
    """
    Locates and decodes a QR code in a binary matrix.

    `decoder` must offer decode(bits, options) -> DecoderResult and
    `detector` is a callable (matrix, options) -> DetectorResult. The
    decoder instance is reused across calls; the default one keeps no
    per-call state, so a reader can be shared between threads.
    """

    def __init__(self, decoder=None, detector=detect):
        self.decoder = decoder if decoder is not None else Decoder()
        self.detector = detector

    def decode(self, image, options=None):
        """
        Decode the symbol in `image` (a BitMatrix).

        Raises NotFoundError, FormatError or ChecksumError. When both the
        detected and the pure-barcode attempt fail, the error of the first
        attempt is raised.
        """
        return self.attempt(image, options).unwrap()

    def attempt(self, image, options=None):
        """Same as decode() but returns a DecodeOutcome instead of raising."""
        if not isinstance(options, DecodeOptions):
            options = DecodeOptions.from_mapping(options)

        # Always prefer the higher-effort search unless told otherwise
        enhanced = options
        if enhanced.try_harder is None:
            enhanced = enhanced.with_changes(try_harder=True)

        first = self._attempt_once(image, enhanced)
        if first.ok or enhanced.pure_barcode:
            return first

        logger.debug("Detection failed (%s), retrying as pure barcode", first.error)
        second = self._attempt_once(image, enhanced.with_changes(pure_barcode=True))
        if second.ok:
            return second
        logger.debug("Pure barcode attempt failed too (%s)", second.error)
        return first

    def _attempt_once(self, image, options):
        try:
            return DecodeOutcome(result=self._decode_internal(image, options))
        except ReaderError as e:
            return DecodeOutcome(error=e)

    def _decode_internal(self, image, options):
        if options.pure_barcode:
            strategy = "pure"
            bits = extract_pure_bits(image)
            points = []
        else:
            strategy = "detected"
            detector_result = self.detector(image, options)
            bits, points = detector_result.bits, list(detector_result.points)

        if qr_debug.DEBUG_DIR:
            qr_debug.save_debug_all(qr_debug.DEBUG_DIR, image, bits, points, strategy)

        decoder_result = self.decoder.decode(bits, options)

        # Mirrored symbol: swap the bottom-left and top-right points
        if isinstance(decoder_result.other, QRCodeDecoderMetaData):
            points = decoder_result.other.apply_mirrored_correction(points)

        result = DecodeResult(decoder_result.text, decoder_result.raw_bytes, points, BarcodeFormat.QR_CODE)
        if decoder_result.byte_segments is not None:
            result.put_metadata(ResultMetadataType.BYTE_SEGMENTS, decoder_result.byte_segments)
        if decoder_result.ec_level is not None:
            result.put_metadata(ResultMetadataType.ERROR_CORRECTION_LEVEL, decoder_result.ec_level)
        if decoder_result.has_structured_append():
            result.put_metadata(ResultMetadataType.STRUCTURED_APPEND_SEQUENCE,
                                decoder_result.structured_append_sequence)
            result.put_metadata(ResultMetadataType.STRUCTURED_APPEND_PARITY,
                                decoder_result.structured_append_parity)
        logger.debug("Decoded %d chars via %s grid", len(result.text), strategy)
        return result


def options_from_flags(flags):
    charset = None
    for flag in flags:
        if flag.startswith('--charset='):
            charset = flag.split('=', 1)[1] or None
    return DecodeOptions(
        try_harder=False if '--fast' in flags else None,
        pure_barcode=True if '--pure' in flags else None,
        character_set=charset,
    )


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    args = [a for a in argv if not a.startswith('--')]
    flags = [a for a in argv if a.startswith('--')]
    if not args:
        print(__doc__.strip())
        return 2
    path = args[0]

    if '--debug' in flags:
        logging.basicConfig(level=logging.DEBUG, format="  %(name)s: %(message)s")
        base = os.path.splitext(os.path.basename(path))[0]
        qr_debug.DEBUG_DIR = os.path.join(os.path.dirname(path) or '.', f"{base}_debug")
        os.makedirs(qr_debug.DEBUG_DIR, exist_ok=True)
        print(f"Debug output -> {qr_debug.DEBUG_DIR}/")

    print("Loading image...")
    image = cv2.imread(path, cv2.IMREAD_GRAYSCALE)
    if image is None:
        print(f"Error: cannot load {path}")
        return 1
    matrix = BitMatrix.from_image(image)

    print("Decoding...")
    try:
        result = QRCodeReader().decode(matrix, options_from_flags(flags))
    except ReaderError as e:
        print(f"Error: {e}")
        return 1

    print(result.text)
    for kind, value in result.metadata.items():
        print(f"  {kind.value}: {value}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
