"""
Shared test fixtures for machotbd tests.
"""

import pytest

from machobuilder import (
    EXTERNAL_DEFINED,
    LOCAL_DEFINED,
    UNDEFINED_EXTERNAL,
    build_macho,
    id_dylib,
    reexport_dylib,
)


@pytest.fixture
def foundation_symbols():
    """A symbol table mixing every classification case, in no particular order."""
    return [
        ("_OBJC_METACLASS_$_NSWidget", EXTERNAL_DEFINED),
        ("_zeta", EXTERNAL_DEFINED),
        ("_OBJC_IVAR_$_NSWidget._size", EXTERNAL_DEFINED),
        ("_OBJC_CLASS_$_NSWidget", EXTERNAL_DEFINED),
        ("_alpha", EXTERNAL_DEFINED),
        ("_OBJC_CLASS_$_NSGadget", EXTERNAL_DEFINED),
        ("_local_helper", LOCAL_DEFINED),
        ("_malloc", UNDEFINED_EXTERNAL),
        ("", EXTERNAL_DEFINED),
    ]


@pytest.fixture
def dylib_image(foundation_symbols):
    """A little-endian x86_64 dylib with an identity, two re-exports and symbols."""
    return build_macho(
        commands=[
            id_dylib("/usr/lib/libwidget.dylib", current_version=0x00023000, compat_version=0x10000),
            reexport_dylib("/usr/lib/libz.dylib"),
            reexport_dylib("/usr/lib/libgadget.dylib"),
        ],
        symbols=foundation_symbols,
    )


@pytest.fixture
def write_binary(tmp_path):
    """Write bytes to a file under tmp_path and return its path as a string."""

    def _write(data, name="libwidget.dylib"):
        path = tmp_path / name
        path.write_bytes(data)
        return str(path)

    return _write
