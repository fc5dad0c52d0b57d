import logging
import struct
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import *

import lz4.block

MAGIC = b'TESV_SAVEGAME'  # Fallout 4 saves carry the Skyrim signature too
NEWEST_VERSION = 12

# an LZ4 block expands its input at most 255 times
LZ4_MAX_RATIO = 255

FILETIME_EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)

log = logging.getLogger("fosinfo")


class SaveFileError(Exception):
    pass


class NotAFile(SaveFileError):
    def __init__(self, path: Path):
        super().__init__(f"{path}: is a directory")
        self.path = path


class UnreadableFile(SaveFileError):
    def __init__(self, path: Path, reason: str):
        super().__init__(f"{path}: couldn't read file ({reason})")
        self.path = path


class DecodeError(SaveFileError):
    pass


class BadMagic(DecodeError):
    def __init__(self, found: bytes):
        super().__init__(
            f"not a {MAGIC.decode('ascii')} savefile (magic {found!r})")
        self.found = found


class TruncatedBuffer(DecodeError):
    def __init__(self, field_name: str, offset: int, needed: int, available: int):
        super().__init__(
            f"buffer exhausted reading {field_name} at offset {offset}: "
            f"need {needed} byte(s), {available} left")
        self.field_name = field_name
        self.offset = offset
        self.needed = needed
        self.available = available


class DecompressionFailure(DecodeError):
    pass


class SaveReader:
    """Bounds-checked little-endian cursor over an immutable buffer.

    Every read names the field it is reading so that an underrun can be
    reported against it.
    """

    def __init__(self, data: bytes, offset: int = 0):
        self._data = bytes(data)
        self._offset = offset

    @property
    def offset(self) -> int:
        return self._offset

    @property
    def remaining(self) -> int:
        return len(self._data) - self._offset

    def _take(self, size: int, field_name: str) -> bytes:
        if size > self.remaining:
            raise TruncatedBuffer(field_name, self._offset,
                                  size, self.remaining)
        chunk = self._data[self._offset: self._offset + size]
        self._offset += size
        return chunk

    def _unpack(self, fmt: str, field_name: str) -> Any:
        raw = self._take(struct.calcsize(fmt), field_name)
        return struct.unpack(fmt, raw)[0]

    def read_u8(self, field_name: str) -> int:
        return self._unpack('<B', field_name)

    def read_u16(self, field_name: str) -> int:
        return self._unpack('<H', field_name)

    def read_u32(self, field_name: str) -> int:
        return self._unpack('<I', field_name)

    def read_f32(self, field_name: str) -> float:
        return self._unpack('<f', field_name)

    def read_bytes(self, size: int, field_name: str) -> bytes:
        return self._take(size, field_name)

    def skip(self, size: int, field_name: str) -> None:
        self._take(size, field_name)

    def read_lp_bytes(self, field_name: str) -> bytes:
        """Read a u16 length followed by exactly that many bytes."""
        length = self.read_u16(f"{field_name} length")
        return self._take(length, field_name)

    def read_string(self, field_name: str) -> str:
        # raw text, shown as-is; undecodable bytes are replaced, not rejected
        return self.read_lp_bytes(field_name).decode('utf-8', errors='replace')

    def tail(self, size: int) -> bytes:
        """Return the last `size` bytes of the whole buffer, ignoring the cursor."""
        return self._data[len(self._data) - size:]


@dataclass
class Timestamp:
    ticks: int  # 100ns intervals since 1601-01-01 UTC

    @classmethod
    def from_filetime(cls, raw: bytes) -> 'Timestamp':
        low, high = struct.unpack('<II', raw)
        return cls(ticks=(high << 32) | low)

    @property
    def as_datetime(self) -> Optional[datetime]:
        try:
            return FILETIME_EPOCH + timedelta(microseconds=self.ticks // 10)
        except OverflowError:
            return None

    def __str__(self):
        dt = self.as_datetime
        if dt is None:
            return f"invalid ({self.ticks} ticks)"
        return dt.isoformat(sep=' ', timespec='seconds')


@dataclass
class SaveHeader:
    engine_version: int
    save_number: int
    character_name: str
    character_level: int
    character_location: str
    character_playtime: str
    character_race: str
    character_sex: int
    player_exp: float
    player_level_exp: float
    filetime: Timestamp

    @property
    def is_newest(self) -> bool:
        return self.engine_version == NEWEST_VERSION

    @property
    def sex_label(self) -> str:
        return "Male" if self.character_sex == 0 else "Female"


@dataclass
class Screenshot:
    width: int
    height: int
    channels: int
    pixels: bytes = field(repr=False)

    @property
    def pixel_count(self) -> int:
        return self.width * self.height


@dataclass
class CompressionBlock:
    compression_type: int
    uncompressed_length: int = 0
    compressed_length: int = 0


@dataclass
class SaveReport:
    header: SaveHeader
    screenshot: Screenshot
    compression: Optional[CompressionBlock]
    format_version: int
    plugins: List[str]
    light_plugins: List[str] = field(default_factory=list)

    @property
    def is_compressed(self) -> bool:
        return self.compression is not None and self.compression.compression_type != 0

    def to_dict(self) -> Dict[str, Any]:
        h = self.header
        dt = h.filetime.as_datetime
        return {
            "engine_version": h.engine_version,
            "save_number": h.save_number,
            "character": {
                "name": h.character_name,
                "level": h.character_level,
                "location": h.character_location,
                "playtime": h.character_playtime,
                "race": h.character_race,
                "sex": h.sex_label,
            },
            "filetime": dt.isoformat() if dt is not None else None,
            "filetime_ticks": h.filetime.ticks,
            "screenshot": {
                "width": self.screenshot.width,
                "height": self.screenshot.height,
                "channels": self.screenshot.channels,
            },
            "compression": {
                "type": self.compression.compression_type,
                "uncompressed_length": self.compression.uncompressed_length,
                "compressed_length": self.compression.compressed_length,
            } if self.compression is not None else None,
            "format_version": self.format_version,
            "plugins": list(self.plugins),
            "light_plugins": list(self.light_plugins),
        }


def _check_magic(data: bytes) -> None:
    found = bytes(data[:len(MAGIC)])
    if found != MAGIC:
        raise BadMagic(found)


def _read_header(reader: SaveReader) -> SaveHeader:
    reader.skip(4, "header size")
    engine_version = reader.read_u32("engine version")
    save_number = reader.read_u32("save number")
    name = reader.read_string("character name")
    level = reader.read_u32("character level")
    location = reader.read_string("character location")
    playtime = reader.read_string("character playtime")
    race = reader.read_string("character race")
    sex = reader.read_u16("character sex")
    player_exp = reader.read_f32("player exp")
    player_level_exp = reader.read_f32("player level exp")
    filetime = Timestamp.from_filetime(reader.read_bytes(8, "filetime"))

    return SaveHeader(
        engine_version=engine_version,
        save_number=save_number,
        character_name=name,
        character_level=level,
        character_location=location,
        character_playtime=playtime,
        character_race=race,
        character_sex=sex,
        player_exp=player_exp,
        player_level_exp=player_level_exp,
        filetime=filetime,
    )


def _read_screenshot(reader: SaveReader, newest: bool) -> Tuple[Screenshot, Optional[CompressionBlock]]:
    width = reader.read_u32("snapshot width")
    height = reader.read_u32("snapshot height")

    compression = None
    if newest:
        compression = CompressionBlock(
            compression_type=reader.read_u16("compression type"))

    channels = 4 if newest else 3
    pixels = reader.read_bytes(width * height * channels, "snapshot pixels")
    return Screenshot(width=width, height=height, channels=channels, pixels=pixels), compression


def decompress_block(compressed: bytes, uncompressed_length: int) -> bytes:
    """Decompress a raw LZ4 block (no frame, no stored size) of known output size."""
    if uncompressed_length > len(compressed) * LZ4_MAX_RATIO:
        raise DecompressionFailure(
            f"uncompressed length {uncompressed_length} is impossible for "
            f"{len(compressed)} compressed byte(s)")
    try:
        out = lz4.block.decompress(
            compressed, uncompressed_size=uncompressed_length)
    except (lz4.block.LZ4BlockError, ValueError, OverflowError, MemoryError) as e:
        raise DecompressionFailure(f"lz4 block decompression failed: {e}")
    if len(out) != uncompressed_length:
        raise DecompressionFailure(
            f"lz4-decompressed size incorrect - expected {uncompressed_length}, "
            f"got {len(out)}")
    return out


def _decompress_tail(reader: SaveReader, compression: CompressionBlock) -> SaveReader:
    compression.uncompressed_length = reader.read_u32("uncompressed length")
    compression.compressed_length = reader.read_u32("compressed length")

    # the compressed region is the end of the file, not the bytes at the cursor
    total = reader.offset + reader.remaining
    if compression.compressed_length > total:
        raise DecompressionFailure(
            f"compressed length {compression.compressed_length} exceeds "
            f"buffer size {total}")

    log.debug("decompressing %d byte(s) into %d byte(s)",
              compression.compressed_length, compression.uncompressed_length)
    data = decompress_block(reader.tail(compression.compressed_length),
                            compression.uncompressed_length)
    return SaveReader(data)


def _read_plugin_list(reader: SaveReader, count: int, kind: str) -> List[str]:
    plugins = []
    for i in range(count):
        plugins.append(reader.read_string(f"{kind} [{i}]"))
    return plugins


def decode(buffer: bytes) -> SaveReport:
    """Decode a whole save buffer in layout order.

    Raises BadMagic before touching anything past the signature, and
    TruncatedBuffer or DecompressionFailure when the layout does not fit
    the buffer.
    """
    _check_magic(buffer)
    reader = SaveReader(buffer, offset=len(MAGIC))

    header = _read_header(reader)
    newest = header.is_newest
    log.debug("engine version %d (%s layout)", header.engine_version,
              "newest" if newest else "legacy")

    screenshot, compression = _read_screenshot(reader, newest)

    if compression is not None and compression.compression_type != 0:
        reader = _decompress_tail(reader, compression)

    format_version = reader.read_u8("format version")
    reader.skip(4, "plugin info size")

    plugin_count = reader.read_u8("plugin count")
    plugins = _read_plugin_list(reader, plugin_count, "plugin")

    light_plugins = []
    if newest:
        light_count = reader.read_u16("light plugin count")
        light_plugins = _read_plugin_list(reader, light_count, "light plugin")

    return SaveReport(
        header=header,
        screenshot=screenshot,
        compression=compression,
        format_version=format_version,
        plugins=plugins,
        light_plugins=light_plugins,
    )


def read_savefile(path: Path) -> SaveReport:
    path = Path(path)
    if path.is_dir():
        raise NotAFile(path)
    try:
        data = path.read_bytes()
    except OSError as e:
        raise UnreadableFile(path, e.strerror or str(e))
    return decode(data)


def _compression_label(compression: Optional[CompressionBlock]) -> str:
    if compression is None or compression.compression_type == 0:
        return "none"
    return (f"type {compression.compression_type} "
            f"({compression.compressed_length} -> {compression.uncompressed_length} bytes)")


def format_report(path: Union[str, Path], report: SaveReport) -> str:
    h = report.header
    lines = [
        f'== File "{path}" ==',
        f"Engine Version: {h.engine_version}",
        f"Save Number: {h.save_number}",
        f"Character Name: {h.character_name}",
        f"Character Level: {h.character_level}",
        f"Character Location: {h.character_location}",
        f"Character Playtime: {h.character_playtime}",
        f"Character Race: {h.character_race}",
        f"Character Sex: {h.sex_label}",
        f"Filetime: {h.filetime}",
        f"Snapshot: {report.screenshot.width}x{report.screenshot.height} "
        f"({report.screenshot.channels} channels)",
        f"Compression: {_compression_label(report.compression)}",
        f"Format Version: {report.format_version}",
    ]
    for i, plugin in enumerate(report.plugins):
        lines.append(f"Plugins [{i:03d}]: {plugin}")
    for i, plugin in enumerate(report.light_plugins):
        lines.append(f"Light Plugins [{i:05d}]: {plugin}")
    lines.append("")
    return "\n".join(lines) + "\n"
