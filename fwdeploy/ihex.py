# ihex.py
# In-process replacement for `objcopy -O ihex`: pulls the loadable segments out
# of an ELF image (or takes a raw binary as-is) and writes Intel HEX records.

import struct
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

ELF_MAGIC = b'\x7fELF'
PT_LOAD = 1

RECORD_TYPE = {
    'data': 0x00,
    'eof': 0x01,
    'extended_linear': 0x04,
    'start_linear': 0x05,
}

EOF_RECORD = ':00000001FF'

# (ELF header after e_ident, program header) layouts per ELF class
ELF_LAYOUTS = {
    1: ('HHIIIIIHHHHHH', 'IIIIIIII'),
    2: ('HHIQQQIHHHHHH', 'IIQQQQQQ'),
}


@dataclass
class Segment:
    address: int
    data: bytes

    @property
    def end(self) -> int:
        return self.address + len(self.data)


@dataclass
class Image:
    """Loadable contents of a firmware file"""
    segments: List[Segment]
    entry: Optional[int] = None

    @property
    def size(self) -> int:
        return sum(len(s.data) for s in self.segments)


def is_elf(blob: bytes) -> bool:
    return blob[:4] == ELF_MAGIC


def parse_elf(blob: bytes) -> Image:
    """Extract PT_LOAD segments, placed at their physical (load) address"""
    elf_class, elf_data = blob[4], blob[5]
    if elf_class not in ELF_LAYOUTS or elf_data not in (1, 2):
        raise ValueError(f"Unsupported ELF class/encoding: {elf_class}/{elf_data}")

    endian = '<' if elf_data == 1 else '>'
    header_fmt, phdr_fmt = ELF_LAYOUTS[elf_class]
    header_fmt = endian + header_fmt
    phdr_fmt = endian + phdr_fmt

    try:
        header = struct.unpack_from(header_fmt, blob, 16)
    except struct.error:
        raise ValueError("Truncated ELF header")
    entry, phoff, phentsize, phnum = header[3], header[4], header[8], header[9]

    segments = []
    for index in range(phnum):
        try:
            fields = struct.unpack_from(phdr_fmt, blob, phoff + index * phentsize)
        except struct.error:
            raise ValueError(f"Truncated program header {index}")
        if elf_class == 1:
            p_type, p_offset, _vaddr, p_paddr, p_filesz = fields[:5]
        else:
            p_type, _flags, p_offset, _vaddr, p_paddr, p_filesz = fields[:6]

        if p_type != PT_LOAD or p_filesz == 0:
            continue
        data = blob[p_offset:p_offset + p_filesz]
        if len(data) != p_filesz:
            raise ValueError(f"Segment {index} runs past end of file")
        segments.append(Segment(p_paddr, bytes(data)))

    if not segments:
        raise ValueError("ELF file has no loadable segments")
    return Image(sorted(segments, key=lambda s: s.address), entry or None)


def load_image(path: Path, base_address: int = 0) -> Image:
    """Load an ELF or raw binary file"""
    blob = Path(path).read_bytes()
    if is_elf(blob):
        return parse_elf(blob)
    return Image([Segment(base_address, blob)])


def _record(record_type: int, address: int, data: bytes = b'') -> str:
    body = bytes([len(data), (address >> 8) & 0xFF, address & 0xFF, record_type]) + data
    checksum = (-sum(body)) & 0xFF
    return ':' + body.hex().upper() + f'{checksum:02X}'


def encode(segments: List[Segment], record_size: int = 16, start_address: Optional[int] = None) -> str:
    """Encode segments as Intel HEX text (32-bit linear addressing)"""
    if not 1 <= record_size <= 255:
        raise ValueError(f"Record size must be 1..255, got {record_size}")

    lines = []
    upper = 0
    previous_end = None
    for segment in sorted(segments, key=lambda s: s.address):
        if previous_end is not None and segment.address < previous_end:
            raise ValueError(f"Overlapping segments at 0x{segment.address:08X}")
        if segment.end > 0x100000000:
            raise ValueError(f"Segment at 0x{segment.address:08X} exceeds 32-bit address space")
        previous_end = segment.end

        offset = 0
        while offset < len(segment.data):
            current = segment.address + offset
            if current >> 16 != upper:
                upper = current >> 16
                lines.append(_record(RECORD_TYPE['extended_linear'], 0, struct.pack('>H', upper)))

            low = current & 0xFFFF
            # records never straddle a 64 KiB boundary
            count = min(record_size, len(segment.data) - offset, 0x10000 - low)
            lines.append(_record(RECORD_TYPE['data'], low, segment.data[offset:offset + count]))
            offset += count

    if start_address is not None:
        lines.append(_record(RECORD_TYPE['start_linear'], 0, struct.pack('>I', start_address)))
    lines.append(EOF_RECORD)
    return '\n'.join(lines) + '\n'


def write_hex(src: Path, dst: Path, base_address: int = 0, record_size: int = 16) -> Path:
    image = load_image(src, base_address)
    dst = Path(dst)
    dst.write_text(encode(image.segments, record_size, image.entry))
    return dst


def write_binary(src: Path, dst: Path, base_address: int = 0) -> Path:
    """Flatten loadable segments into one image, gaps filled with 0xFF"""
    image = load_image(src, base_address)
    start = image.segments[0].address
    end = max(s.end for s in image.segments)
    flat = bytearray(b'\xFF' * (end - start))
    for segment in image.segments:
        offset = segment.address - start
        flat[offset:offset + len(segment.data)] = segment.data
    dst = Path(dst)
    dst.write_bytes(bytes(flat))
    return dst
