import struct

import lz4.block
import pytest

from fosinfo import MAGIC

# 2020-01-01 00:00:00 UTC
FILETIME_2020 = 132223104000000000


def lp(text):
    raw = text.encode('utf-8') if isinstance(text, str) else text
    return struct.pack('<H', len(raw)) + raw


def build_save(version=9, save_number=42, name="Nate", level=7,
               location="Sanctuary Hills", playtime="001.02.03",
               race="HumanRace", sex=0, ticks=FILETIME_2020,
               width=2, height=3, compression_type=0, format_version=74,
               plugins=("Fallout4.esm",), light_plugins=()):
    out = bytearray(MAGIC)
    out += struct.pack('<I', 0)
    out += struct.pack('<II', version, save_number)
    out += lp(name)
    out += struct.pack('<I', level)
    out += lp(location)
    out += lp(playtime)
    out += lp(race)
    out += struct.pack('<H', sex)
    out += struct.pack('<ff', 1.5, 2.5)
    out += struct.pack('<II', ticks & 0xFFFFFFFF, ticks >> 32)
    out += struct.pack('<II', width, height)
    channels = 3
    if version == 12:
        out += struct.pack('<H', compression_type)
        channels = 4
    out += bytes(i % 256 for i in range(width * height * channels))

    body = bytearray()
    body += struct.pack('<B', format_version)
    body += struct.pack('<I', 0)
    body += struct.pack('<B', len(plugins))
    for p in plugins:
        body += lp(p)
    if version == 12:
        body += struct.pack('<H', len(light_plugins))
        for p in light_plugins:
            body += lp(p)

    if version == 12 and compression_type != 0:
        compressed = lz4.block.compress(bytes(body), store_size=False)
        out += struct.pack('<II', len(body), len(compressed))
        out += compressed
    else:
        out += body
    return bytes(out)


@pytest.fixture
def legacy_save():
    return build_save(version=9, plugins=("A.esp", "B.esp", "C.esp"))


@pytest.fixture
def compressed_save():
    return build_save(version=12, compression_type=2,
                      plugins=("Fallout4.esm", "DLCRobot.esm"),
                      light_plugins=("ccBGSFO4001-PipBoy(Black).esl",
                                     "ccBGSFO4003-PipBoy(Camo01).esl"))
