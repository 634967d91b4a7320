"""
QR payload decoder: rectified module grid -> text.

Reads format information, removes the data mask, collects codewords in
zig-zag order, repairs each block with Reed-Solomon and parses the segment
bitstream. A grid that only reads when transposed is reported as mirrored.
"""

import logging
from functools import lru_cache

import numpy as np

from qr_errors import ChecksumError, FormatError
from qr_result import DecoderResult, QRCodeDecoderMetaData
from reed_solomon import ReedSolomon

logger = logging.getLogger(__name__)


# ============================================================================
# FORMAT & VERSION
# ============================================================================

FORMAT_INFO_MASK = 0x5412
FORMAT_BCH_POLY = 0x537
# Two format bits -> EC level
EC_NAMES = {0: 'M', 1: 'L', 2: 'H', 3: 'Q'}


def _bch_format(data):
    value = data << 10
    for shift in range(4, -1, -1):
        if value & (1 << (shift + 10)):
            value ^= FORMAT_BCH_POLY << shift
    return (data << 10) | value


# (masked 15-bit code, 5 data bits) for every valid format word
FORMAT_CODES = [(_bch_format(d) ^ FORMAT_INFO_MASK, d) for d in range(32)]


def _to_int(bits):
    v = 0
    for b in bits:
        v = (v << 1) | int(b)
    return v


def read_format_info(matrix):
    """EC level name and mask pattern, from whichever copy is closest to a valid word."""
    size = matrix.shape[0]
    first = [matrix[8, c] for c in [0, 1, 2, 3, 4, 5, 7, 8]] + [matrix[r, 8] for r in [7, 5, 4, 3, 2, 1, 0]]
    second = [matrix[r, 8] for r in range(size - 1, size - 8, -1)] + [matrix[8, c] for c in range(size - 8, size)]

    best, best_dist = None, 16
    for bits in (first, second):
        value = _to_int(bits)
        for code, data in FORMAT_CODES:
            dist = bin(value ^ code).count('1')
            if dist < best_dist:
                best, best_dist = data, dist
    # BCH(15,5) corrects up to 3 bit errors
    if best is None or best_dist > 3:
        raise FormatError("unreadable format information")
    return EC_NAMES[best >> 3], best & 0x07


def version_for_dimension(size):
    if size % 4 != 1 or not 21 <= size <= 177:
        raise FormatError(f"{size} is not a valid QR dimension")
    return (size - 17) // 4


# ============================================================================
# FUNCTION PATTERNS & MASK
# ============================================================================

AP_POSITIONS = {
    2:[6,18],3:[6,22],4:[6,26],5:[6,30],6:[6,34],7:[6,22,38],8:[6,24,42],9:[6,26,46],10:[6,28,50],
    11:[6,30,54],12:[6,32,58],13:[6,34,62],14:[6,26,46,66],15:[6,26,48,70],16:[6,26,50,74],
    17:[6,30,54,78],18:[6,30,56,82],19:[6,30,58,86],20:[6,34,62,90],21:[6,28,50,72,94],
    22:[6,26,50,74,98],23:[6,30,54,78,102],24:[6,28,54,80,106],25:[6,32,58,84,110],
    26:[6,30,58,86,114],27:[6,34,62,90,118],28:[6,26,50,74,98,122],29:[6,30,54,78,102,126],
    30:[6,26,52,78,104,130],31:[6,30,56,82,108,134],32:[6,34,60,86,112,138],
    33:[6,30,58,86,114,142],34:[6,34,62,90,118,146],35:[6,30,54,78,102,126,150],
    36:[6,24,50,76,102,128,154],37:[6,28,54,80,106,132,158],38:[6,32,58,84,110,136,162],
    39:[6,26,54,82,110,138,166],40:[6,30,58,86,114,142,170]
}


@lru_cache(maxsize=None)
def function_mask(size):
    """True where a module belongs to a function pattern (not data). Read-only."""
    version = (size - 17) // 4
    f = np.zeros((size, size), dtype=bool)

    # Finders, separators and format info
    f[0:9, 0:9] = True
    f[0:9, size-8:size] = True
    f[size-8:size, 0:9] = True
    # Timing
    f[6, :] = True
    f[:, 6] = True
    # Version info (v >= 7)
    if version >= 7:
        f[0:6, size-11:size-8] = True
        f[size-11:size-8, 0:6] = True
    # Alignment patterns, except where they would overlap a finder
    positions = AP_POSITIONS.get(version, [])
    for ar in positions:
        for ac in positions:
            if ar <= 8 and ac <= 8: continue
            if ar <= 8 and ac >= size-9: continue
            if ar >= size-9 and ac <= 8: continue
            f[ar-2:ar+3, ac-2:ac+3] = True

    f.flags.writeable = False
    return f


DATA_MASKS = [
    lambda r, c: (r + c) % 2 == 0,
    lambda r, c: r % 2 == 0,
    lambda r, c: c % 3 == 0,
    lambda r, c: (r + c) % 3 == 0,
    lambda r, c: (r // 2 + c // 3) % 2 == 0,
    lambda r, c: (r * c) % 2 + (r * c) % 3 == 0,
    lambda r, c: ((r * c) % 2 + (r * c) % 3) % 2 == 0,
    lambda r, c: ((r + c) % 2 + (r * c) % 3) % 2 == 0,
]


def unmask(matrix, mask):
    """Undo the data mask on data modules only."""
    size = matrix.shape[0]
    r, c = np.indices((size, size))
    flip = DATA_MASKS[mask](r, c) & ~function_mask(size)
    return matrix ^ flip


def read_codewords(matrix):
    """Read codewords in zig-zag pattern: column pairs right to left, alternating up/down."""
    size = matrix.shape[0]
    is_function = function_mask(size)
    bits, col, up = [], size - 1, True
    while col >= 0:
        if col == 6:
            col -= 1
            continue
        for row in (range(size-1, -1, -1) if up else range(size)):
            if not is_function[row, col]: bits.append(int(matrix[row, col]))
            if col > 0 and not is_function[row, col-1]: bits.append(int(matrix[row, col-1]))
        col -= 2
        up = not up
    return [_to_int(bits[i:i+8]) for i in range(0, len(bits) - 7, 8)]


# ============================================================================
# ERROR CORRECTION BLOCKS
# ============================================================================

# Per version 1..40 (index 0 unused), in L, M, Q, H order
ECC_PER_BLOCK = {
    'L': [0, 7, 10, 15, 20, 26, 18, 20, 24, 30, 18, 20, 24, 26, 30, 22, 24, 28, 30, 28, 28, 28, 28, 30, 30, 26, 28, 30, 30, 30, 30, 30, 30, 30, 30, 30, 30, 30, 30, 30, 30],
    'M': [0, 10, 16, 26, 18, 24, 16, 18, 22, 22, 26, 30, 22, 22, 24, 24, 28, 28, 26, 26, 26, 26, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28, 28],
    'Q': [0, 13, 22, 18, 26, 18, 24, 18, 22, 20, 24, 28, 26, 24, 20, 30, 24, 28, 28, 26, 30, 28, 30, 30, 30, 30, 28, 30, 30, 30, 30, 30, 30, 30, 30, 30, 30, 30, 30, 30, 30],
    'H': [0, 17, 28, 22, 16, 22, 28, 26, 26, 24, 28, 24, 28, 22, 24, 24, 30, 28, 28, 26, 28, 30, 24, 30, 30, 30, 30, 30, 30, 30, 30, 30, 30, 30, 30, 30, 30, 30, 30, 30, 30],
}
NUM_BLOCKS = {
    'L': [0, 1, 1, 1, 1, 1, 2, 2, 2, 2, 4, 4, 4, 4, 4, 6, 6, 6, 6, 7, 8, 8, 9, 9, 10, 12, 12, 12, 13, 14, 15, 16, 17, 18, 19, 19, 20, 21, 22, 24, 25],
    'M': [0, 1, 1, 1, 2, 2, 4, 4, 4, 5, 5, 5, 8, 9, 9, 10, 10, 11, 13, 14, 16, 17, 17, 18, 20, 21, 23, 25, 26, 28, 29, 31, 33, 35, 37, 38, 40, 43, 45, 47, 49],
    'Q': [0, 1, 1, 2, 2, 4, 4, 6, 6, 8, 8, 8, 10, 12, 16, 12, 17, 16, 18, 21, 20, 23, 23, 25, 27, 29, 34, 34, 35, 38, 40, 43, 45, 48, 51, 53, 56, 59, 62, 65, 68],
    'H': [0, 1, 1, 2, 4, 4, 4, 5, 6, 8, 8, 11, 11, 16, 16, 18, 16, 19, 21, 25, 25, 25, 34, 30, 32, 35, 37, 40, 42, 45, 48, 51, 54, 57, 60, 63, 66, 70, 74, 77, 81],
}


def total_codewords(version):
    """Codewords that fit in the data area of a symbol."""
    modules = (16 * version + 128) * version + 64
    if version >= 2:
        num_align = version // 7 + 2
        modules -= (25 * num_align - 10) * num_align - 55
        if version >= 7:
            modules -= 36
    return modules // 8


def block_layout(version, ec_level):
    """[(data_len, total_len), ...] per block; short blocks come first."""
    total = total_codewords(version)
    ecc = ECC_PER_BLOCK[ec_level][version]
    count = NUM_BLOCKS[ec_level][version]
    short_len, long_count = divmod(total, count)
    return [(short_len - ecc, short_len)] * (count - long_count) + [(short_len + 1 - ecc, short_len + 1)] * long_count


def correct_blocks(codewords, version, ec_level):
    """De-interleave codewords into blocks and repair each one."""
    blocks = block_layout(version, ec_level)
    if len(codewords) < sum(total for _, total in blocks):
        raise FormatError(f"read {len(codewords)} codewords, version {version} needs {sum(t for _, t in blocks)}")

    block_data, block_ec = [[] for _ in blocks], [[] for _ in blocks]
    idx, max_data, ec_len = 0, max(b[0] for b in blocks), blocks[0][1] - blocks[0][0]
    for col in range(max_data):
        for i, (data_len, _) in enumerate(blocks):
            if col < data_len:
                block_data[i].append(codewords[idx])
                idx += 1
    for col in range(ec_len):
        for i in range(len(blocks)):
            block_ec[i].append(codewords[idx])
            idx += 1

    rs, data = ReedSolomon(ec_len), []
    for i in range(len(blocks)):
        try:
            data.extend(rs.decode(block_data[i] + block_ec[i]))
        except ValueError as e:
            raise ChecksumError(f"block {i}: {e}") from e
    return data


# ============================================================================
# BITSTREAM
# ============================================================================

MODE_TERMINATOR = 0x0
MODE_NUMERIC = 0x1
MODE_ALPHANUMERIC = 0x2
MODE_STRUCTURED_APPEND = 0x3
MODE_BYTE = 0x4
MODE_FNC1_FIRST = 0x5
MODE_ECI = 0x7
MODE_KANJI = 0x8
MODE_FNC1_SECOND = 0x9
MODE_HANZI = 0xD

ALNUM = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ $%*+-./:"
GB2312_SUBSET = 1

ECI_CHARSETS = {
    0: 'cp437', 1: 'iso-8859-1', 2: 'cp437', 3: 'iso-8859-1', 4: 'iso-8859-2', 5: 'iso-8859-3',
    6: 'iso-8859-4', 7: 'iso-8859-5', 8: 'iso-8859-6', 9: 'iso-8859-7', 10: 'iso-8859-8',
    11: 'iso-8859-9', 12: 'iso-8859-10', 13: 'iso-8859-11', 15: 'iso-8859-13', 16: 'iso-8859-14',
    17: 'iso-8859-15', 18: 'iso-8859-16', 20: 'shift_jis', 21: 'cp1250', 22: 'cp1251',
    23: 'cp1252', 24: 'cp1256', 25: 'utf-16-be', 26: 'utf-8', 27: 'ascii', 28: 'big5',
    29: 'gb18030', 30: 'euc-kr',
}


class BitSource:
    """Reads big-endian bit fields from a byte sequence."""

    def __init__(self, data):
        self.data = bytes(data)
        self.pos = 0

    def available(self):
        return len(self.data) * 8 - self.pos

    def read(self, n):
        if n > self.available():
            raise FormatError(f"bitstream overrun: wanted {n} bits, {self.available()} left")
        v = 0
        for _ in range(n):
            v = (v << 1) | ((self.data[self.pos >> 3] >> (7 - (self.pos & 7))) & 1)
            self.pos += 1
        return v


def count_bits(mode, version):
    """Character count indicator length by version group."""
    if version <= 9:
        return {MODE_NUMERIC: 10, MODE_ALPHANUMERIC: 9, MODE_BYTE: 8}.get(mode, 8)
    elif version <= 26:
        return {MODE_NUMERIC: 12, MODE_ALPHANUMERIC: 11, MODE_BYTE: 16}.get(mode, 10)
    else:
        return {MODE_NUMERIC: 14, MODE_ALPHANUMERIC: 13, MODE_BYTE: 16}.get(mode, 12)


def _parse_eci(bits):
    first = bits.read(8)
    if first & 0x80 == 0:
        return first & 0x7F
    if first & 0xC0 == 0x80:
        return ((first & 0x3F) << 8) | bits.read(8)
    if first & 0xE0 == 0xC0:
        return ((first & 0x1F) << 16) | bits.read(16)
    raise FormatError(f"bad ECI designator 0x{first:02x}")


def _decode_bytes(raw, charset):
    if charset:
        try:
            return raw.decode(charset)
        except (LookupError, UnicodeDecodeError) as e:
            raise FormatError(f"byte segment is not valid {charset}: {e}") from e
    try:
        return raw.decode('utf-8')
    except UnicodeDecodeError:
        return raw.decode('iso-8859-1')


def _read_numeric(bits, count):
    out = []
    while count >= 3:
        val = bits.read(10)
        if val >= 1000: raise FormatError(f"numeric triplet {val}")
        out.append(f"{val:03d}")
        count -= 3
    if count == 2:
        val = bits.read(7)
        if val >= 100: raise FormatError(f"numeric pair {val}")
        out.append(f"{val:02d}")
    elif count == 1:
        val = bits.read(4)
        if val >= 10: raise FormatError(f"numeric digit {val}")
        out.append(str(val))
    return "".join(out)


def _alnum(val):
    if val >= len(ALNUM):
        raise FormatError(f"alphanumeric value {val}")
    return ALNUM[val]


def _read_alphanumeric(bits, count, fnc1):
    out = []
    while count >= 2:
        val = bits.read(11)
        out.append(_alnum(val // 45) + _alnum(val % 45))
        count -= 2
    if count == 1:
        out.append(_alnum(bits.read(6)))
    text = "".join(out)
    if fnc1:
        # In FNC1 mode "%%" is a literal percent and a lone "%" is GS
        text = "\x1d".join(part.replace("\x00", "%") for part in text.replace("%%", "\x00").split("%"))
    return text


def _read_double_byte(bits, count, divisor, small_limit, small_base, large_base, codec):
    raw = bytearray()
    for _ in range(count):
        val = bits.read(13)
        assembled = ((val // divisor) << 8) | (val % divisor)
        assembled += small_base if assembled < small_limit else large_base
        raw += bytes(((assembled >> 8) & 0xFF, assembled & 0xFF))
    try:
        return raw.decode(codec)
    except UnicodeDecodeError as e:
        raise FormatError(f"invalid {codec} sequence") from e


def parse_bitstream(data, version, character_set=None):
    """
    Decode segment data. Returns (text, byte_segments, sa_sequence, sa_parity);
    the structured append fields are -1 when absent.
    """
    bits = BitSource(data)
    text, byte_segments = [], []
    charset = None
    fnc1 = False
    sa_sequence, sa_parity = -1, -1

    while True:
        mode = MODE_TERMINATOR if bits.available() < 4 else bits.read(4)
        if mode == MODE_TERMINATOR:
            break
        if mode in (MODE_FNC1_FIRST, MODE_FNC1_SECOND):
            fnc1 = True
            if mode == MODE_FNC1_SECOND:
                bits.read(8)  # application indicator
        elif mode == MODE_STRUCTURED_APPEND:
            if bits.available() < 16:
                raise FormatError("truncated structured append header")
            sa_sequence, sa_parity = bits.read(8), bits.read(8)
        elif mode == MODE_ECI:
            value = _parse_eci(bits)
            if value not in ECI_CHARSETS:
                raise FormatError(f"unsupported ECI {value}")
            charset = ECI_CHARSETS[value]
        elif mode == MODE_HANZI:
            subset = bits.read(4)
            count = bits.read(count_bits(MODE_KANJI, version))
            if subset == GB2312_SUBSET:
                text.append(_read_double_byte(bits, count, 0x060, 0x00A00, 0x0A1A1, 0x0A6A1, 'gb2312'))
        elif mode == MODE_NUMERIC:
            text.append(_read_numeric(bits, bits.read(count_bits(mode, version))))
        elif mode == MODE_ALPHANUMERIC:
            text.append(_read_alphanumeric(bits, bits.read(count_bits(mode, version)), fnc1))
        elif mode == MODE_BYTE:
            count = bits.read(count_bits(mode, version))
            raw = bytes(bits.read(8) for _ in range(count))
            byte_segments.append(raw)
            text.append(_decode_bytes(raw, charset or character_set))
        elif mode == MODE_KANJI:
            count = bits.read(count_bits(mode, version))
            text.append(_read_double_byte(bits, count, 0x0C0, 0x01F00, 0x08140, 0x0C140, 'shift_jis'))
        else:
            raise FormatError(f"unknown mode {mode}")

    return "".join(text), byte_segments or None, sa_sequence, sa_parity


# ============================================================================
# DECODER
# ============================================================================

class Decoder:
    """
    Decodes a rectified module grid. Holds no per-call state, so one
    instance can serve several threads.
    """

    def decode(self, bits, options=None):
        charset = options.character_set if options is not None else None
        first_error = None
        try:
            return self._decode_matrix(bits.bits, charset)
        except (FormatError, ChecksumError) as e:
            first_error = e

        # Maybe the symbol was captured mirrored: read it transposed
        try:
            result = self._decode_matrix(bits.bits.T, charset)
        except (FormatError, ChecksumError):
            result = None
        if result is None:
            raise first_error
        logger.debug("Decoded mirrored symbol")
        result.other = QRCodeDecoderMetaData(mirrored=True)
        return result

    def _decode_matrix(self, matrix, charset):
        if matrix.shape[0] != matrix.shape[1]:
            raise FormatError(f"grid {matrix.shape[1]}x{matrix.shape[0]} is not square")
        matrix = matrix.astype(np.uint8)
        version = version_for_dimension(matrix.shape[0])
        ec_level, mask = read_format_info(matrix)
        logger.debug("Version: %d, RS level: %s (mask %d)", version, ec_level, mask)

        codewords = read_codewords(unmask(matrix, mask))
        data = correct_blocks(codewords, version, ec_level)
        text, segments, sa_sequence, sa_parity = parse_bitstream(data, version, charset)
        return DecoderResult(text=text, raw_bytes=bytes(data), byte_segments=segments,
                             ec_level=ec_level, structured_append_sequence=sa_sequence,
                             structured_append_parity=sa_parity)
