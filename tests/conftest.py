"""
Pytest configuration for the chipvm test suite.

pygame is only ever used headless here: no window, no audio device.
"""

import os

os.environ.setdefault("SDL_VIDEODRIVER", "dummy")
os.environ.setdefault("SDL_AUDIODRIVER", "dummy")
os.environ.setdefault("PYGAME_HIDE_SUPPORT_PROMPT", "1")

import pytest

from chipvm import Machine, LOAD_POS


def assemble(*words, data=None):
    """Build a program image from instruction words.

    data maps absolute addresses (>= LOAD_POS) to byte sequences placed
    after the code.
    """
    image = bytearray()
    for word in words:
        image += bytes([word >> 8 & 0xFF, word & 0xFF])
    for address, chunk in (data or {}).items():
        offset = address - LOAD_POS
        if len(image) < offset + len(chunk):
            image += bytes(offset + len(chunk) - len(image))
        image[offset:offset + len(chunk)] = chunk
    return bytes(image)


@pytest.fixture
def machine():
    return Machine()


@pytest.fixture
def boot(machine):
    """Load a program made of the given words into a fresh machine"""
    def _boot(*words, data=None):
        machine.load(assemble(*words, data=data))
        return machine
    return _boot
