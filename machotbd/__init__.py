"""
machotbd - generate text-based dylib stubs from Mach-O libraries

machotbd reads a thin or Universal (FAT) Mach-O dynamic library and collects
its exported symbols, Objective-C classes and instance variables, install
name, versions and re-exports per architecture, then renders them as a tbd
stub that can be linked against in place of the library. Pure Python, no
dependencies, endianness independent.

License: MIT
"""

from .machotbd import (
    UniversalMachO,
    MachO,
    ArchitectureRecord,
    LibraryDescriptor,
    TBDConfig,
    MachOError,
    MalformedInputError,
    UnsupportedFormatError,
    UnsupportedArchitectureError,
    TruncatedCommandError,
    NoArchitecturesError,
    parse_library,
    main,
)
from .tbd import format_tbd

__version__ = "2026.10.19"
__license__ = "MIT"

__all__ = [
    "UniversalMachO",
    "MachO",
    "ArchitectureRecord",
    "LibraryDescriptor",
    "TBDConfig",
    "MachOError",
    "MalformedInputError",
    "UnsupportedFormatError",
    "UnsupportedArchitectureError",
    "TruncatedCommandError",
    "NoArchitecturesError",
    "parse_library",
    "format_tbd",
    "main",
]
