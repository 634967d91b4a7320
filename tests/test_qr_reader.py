import cv2
import numpy as np
import pytest

import qr_reader
from bit_matrix import BitMatrix
from qr_errors import ChecksumError, FormatError, NotFoundError
from qr_reader import DecodeOutcome, QRCodeReader, main, options_from_flags
from qr_result import (BarcodeFormat, DecodeOptions, DecoderResult,
                       DetectorResult, QRCodeDecoderMetaData, ResultMetadataType,
                       ResultPoint)

POINTS = [ResultPoint(10.0, 90.0), ResultPoint(10.0, 10.0), ResultPoint(90.0, 10.0)]


class FakeDecoder:
    """Records every call; returns `result` or raises the next queued error."""

    def __init__(self, result=None, errors=()):
        self.result = result or DecoderResult("payload", b"\x40\x77")
        self.errors = list(errors)
        self.calls = []

    def decode(self, bits, options=None):
        self.calls.append((bits, options))
        if self.errors:
            raise self.errors.pop(0)
        return self.result


class FakeDetector:
    def __init__(self, error=None, bits=None, points=POINTS):
        self.error = error
        self.bits = bits if bits is not None else BitMatrix(21)
        self.points = points
        self.calls = []

    def __call__(self, image, options):
        self.calls.append(options)
        if self.error is not None:
            raise self.error
        return DetectorResult(self.bits, list(self.points))


@pytest.fixture
def blank():
    return BitMatrix(60, 60)


@pytest.fixture
def pure_image(render_symbol, make_symbol):
    return render_symbol(make_symbol(21, seed=5), 4, 8)


# ---------------------------------------------------------------------------
# options
# ---------------------------------------------------------------------------

def test_try_harder_is_forced_when_unset(blank):
    detector = FakeDetector()
    QRCodeReader(FakeDecoder(), detector).decode(blank)
    assert detector.calls[0].try_harder is True


def test_explicit_try_harder_false_is_kept(blank):
    detector = FakeDetector()
    QRCodeReader(FakeDecoder(), detector).decode(blank, DecodeOptions(try_harder=False))
    assert detector.calls[0].try_harder is False


def test_mapping_options_pass_unknown_keys_through(blank):
    decoder = FakeDecoder()
    hints = {'character_set': 'shift_jis', 'allowed_lengths': [8, 13]}
    QRCodeReader(decoder, FakeDetector()).decode(blank, hints)

    options = decoder.calls[0][1]
    assert options.character_set == 'shift_jis'
    assert options.extra == {'allowed_lengths': [8, 13]}
    assert hints == {'character_set': 'shift_jis', 'allowed_lengths': [8, 13]}


def test_caller_options_are_not_replaced(pure_image):
    options = DecodeOptions(character_set='utf-8')
    detector = FakeDetector(error=NotFoundError("no finders"))
    QRCodeReader(FakeDecoder(), detector).decode(pure_image, options)
    assert options == DecodeOptions(character_set='utf-8')


# ---------------------------------------------------------------------------
# fallback
# ---------------------------------------------------------------------------

def test_detected_result_keeps_points(blank):
    decoder = FakeDecoder()
    result = QRCodeReader(decoder, FakeDetector()).decode(blank)
    assert result.text == "payload"
    assert result.raw_bytes == b"\x40\x77"
    assert result.points == POINTS
    assert result.format is BarcodeFormat.QR_CODE
    assert len(decoder.calls) == 1


def test_falls_back_to_pure_barcode(pure_image, make_symbol):
    decoder = FakeDecoder()
    detector = FakeDetector(error=NotFoundError("no finders"))
    result = QRCodeReader(decoder, detector).decode(pure_image)

    assert result.text == "payload"
    assert result.points == []
    assert len(detector.calls) == 1
    bits, options = decoder.calls[0]
    assert options.pure_barcode is True
    assert options.try_harder is True
    assert np.array_equal(bits.bits, make_symbol(21, seed=5))


def test_decoder_failure_also_triggers_fallback(pure_image):
    decoder = FakeDecoder(errors=[ChecksumError("block 0")])
    result = QRCodeReader(decoder, FakeDetector()).decode(pure_image)
    assert result.points == []
    assert [opts.pure_barcode for _, opts in decoder.calls] == [None, True]


def test_first_error_is_raised_when_fallback_fails(blank):
    first = NotFoundError("found 1 finder patterns, need 3")
    reader = QRCodeReader(FakeDecoder(), FakeDetector(error=first))
    with pytest.raises(NotFoundError) as info:
        reader.decode(blank)
    assert info.value is first


def test_first_decoder_error_wins_over_extraction_error(blank):
    first = FormatError("unreadable format information")
    reader = QRCodeReader(FakeDecoder(errors=[first]), FakeDetector())
    with pytest.raises(FormatError) as info:
        reader.decode(blank)
    assert info.value is first


def test_first_error_wins_when_both_decodes_fail(pure_image):
    first, second = ChecksumError("first"), FormatError("second")
    decoder = FakeDecoder(errors=[first, second])
    with pytest.raises(ChecksumError, match="first"):
        QRCodeReader(decoder, FakeDetector()).decode(pure_image)
    assert len(decoder.calls) == 2


def test_requested_pure_barcode_fails_once(blank):
    decoder, detector = FakeDecoder(), FakeDetector()
    with pytest.raises(NotFoundError):
        QRCodeReader(decoder, detector).decode(blank, DecodeOptions(pure_barcode=True))
    assert detector.calls == []
    assert decoder.calls == []


def test_requested_pure_barcode_decoder_failure_is_terminal(pure_image):
    decoder = FakeDecoder(errors=[ChecksumError("block 1")])
    detector = FakeDetector()
    with pytest.raises(ChecksumError):
        QRCodeReader(decoder, detector).decode(pure_image, {'pure_barcode': True})
    assert len(decoder.calls) == 1
    assert detector.calls == []


def test_attempt_returns_tagged_outcome(blank):
    error = NotFoundError("nothing here")
    outcome = QRCodeReader(FakeDecoder(), FakeDetector(error=error)).attempt(blank)
    assert isinstance(outcome, DecodeOutcome)
    assert not outcome.ok
    assert outcome.result is None
    assert outcome.error is error

    outcome = QRCodeReader(FakeDecoder(), FakeDetector()).attempt(blank)
    assert outcome.ok
    assert outcome.unwrap().text == "payload"


# ---------------------------------------------------------------------------
# result assembly
# ---------------------------------------------------------------------------

def test_metadata_copied_from_payload(blank):
    payload = DecoderResult("AB", b"AB", byte_segments=[b"AB"], ec_level='Q',
                            structured_append_sequence=0x12, structured_append_parity=0x37)
    result = QRCodeReader(FakeDecoder(payload), FakeDetector()).decode(blank)
    assert result.metadata == {
        ResultMetadataType.BYTE_SEGMENTS: [b"AB"],
        ResultMetadataType.ERROR_CORRECTION_LEVEL: 'Q',
        ResultMetadataType.STRUCTURED_APPEND_SEQUENCE: 0x12,
        ResultMetadataType.STRUCTURED_APPEND_PARITY: 0x37,
    }


def test_absent_fields_leave_no_metadata(blank):
    result = QRCodeReader(FakeDecoder(DecoderResult("1", b"1")), FakeDetector()).decode(blank)
    assert result.metadata == {}


def test_mirrored_payload_swaps_corner_points(blank):
    payload = DecoderResult("M", b"M", other=QRCodeDecoderMetaData(mirrored=True))
    result = QRCodeReader(FakeDecoder(payload), FakeDetector()).decode(blank)
    assert result.points == [POINTS[2], POINTS[1], POINTS[0]]


def test_unmirrored_metadata_keeps_points(blank):
    payload = DecoderResult("M", b"M", other=QRCodeDecoderMetaData(mirrored=False))
    result = QRCodeReader(FakeDecoder(payload), FakeDetector()).decode(blank)
    assert result.points == POINTS


def test_to_dict_is_json_friendly(blank):
    payload = DecoderResult("AB", b"AB", byte_segments=[b"AB"], ec_level='L')
    data = QRCodeReader(FakeDecoder(payload), FakeDetector()).decode(blank).to_dict()
    assert data['raw_bytes'] == "4142"
    assert data['points'][0] == [10.0, 90.0]
    assert data['metadata'] == {'byte_segments': ["4142"], 'error_correction_level': 'L'}


# ---------------------------------------------------------------------------
# with the real decoder / detector
# ---------------------------------------------------------------------------

def test_mirrored_symbol_end_to_end(make_segno):
    modules = make_segno("MIRROR", error='m')
    detector = FakeDetector(bits=BitMatrix.from_array(modules.T))
    result = QRCodeReader(detector=detector).decode(BitMatrix(10))
    assert result.text == "MIRROR"
    assert result.points == [POINTS[2], POINTS[1], POINTS[0]]
    assert result.metadata[ResultMetadataType.ERROR_CORRECTION_LEVEL] == 'M'


def test_detected_grid_reaches_real_decoder(make_segno):
    modules = make_segno("PLAIN", error='l')
    detector = FakeDetector(bits=BitMatrix.from_array(modules))
    result = QRCodeReader(detector=detector).decode(BitMatrix(5))
    assert result.text == "PLAIN"
    assert result.points == POINTS
    assert ResultMetadataType.STRUCTURED_APPEND_SEQUENCE not in result.metadata


def test_detects_rendered_symbol(make_segno, render_symbol):
    image = render_symbol(make_segno("HELLO", error='m'), 10, 40)
    result = QRCodeReader().decode(image)

    assert result.text == "HELLO"
    assert len(result.points) == 3
    bottom_left, top_left, top_right = result.points
    assert top_left.x == pytest.approx(74.5, abs=2)
    assert top_left.y == pytest.approx(74.5, abs=2)
    assert top_right.x == pytest.approx(214.5, abs=2)
    assert bottom_left.y == pytest.approx(214.5, abs=2)


# ---------------------------------------------------------------------------
# command line
# ---------------------------------------------------------------------------

def test_options_from_flags():
    assert options_from_flags([]) == DecodeOptions()
    assert options_from_flags(['--pure', '--fast', '--charset=cp932']) == DecodeOptions(
        try_harder=False, pure_barcode=True, character_set='cp932')


def test_main_without_arguments_prints_usage(capsys):
    assert main([]) == 2
    assert "Usage" in capsys.readouterr().out


def test_main_reports_unreadable_file(tmp_path, capsys):
    assert main([str(tmp_path / "missing.png")]) == 1
    assert "cannot load" in capsys.readouterr().out


def test_main_prints_text_and_metadata(tmp_path, capsys, monkeypatch, render_symbol, make_symbol):
    path = tmp_path / "symbol.png"
    cv2.imwrite(str(path), render_symbol(make_symbol(21), 4, 8).to_image())
    payload = DecoderResult("from file", b"", ec_level='H')
    monkeypatch.setattr(qr_reader, "QRCodeReader",
                        lambda: QRCodeReader(FakeDecoder(payload), FakeDetector()))

    assert main([str(path)]) == 0
    out = capsys.readouterr().out
    assert "from file" in out
    assert "ERROR_CORRECTION_LEVEL: H" in out


def test_main_reports_decode_error(tmp_path, capsys, monkeypatch):
    path = tmp_path / "blank.png"
    cv2.imwrite(str(path), np.full((40, 40), 255, dtype=np.uint8))
    monkeypatch.setattr(qr_reader, "QRCodeReader",
                        lambda: QRCodeReader(FakeDecoder(), FakeDetector(error=NotFoundError("no finders"))))

    assert main([str(path)]) == 1
    assert "Error: not found: no finders" in capsys.readouterr().out
