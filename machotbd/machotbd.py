"""machotbd, Mach-O to text-based dylib stub generator

Reads a Mach-O dynamic library, either a single-architecture image or a
universal (FAT) container, and collects what a linker needs to link against
it without the binary itself: exported symbols, Objective-C classes and
instance variables, the install name, versions and re-exported libraries.
The result is handed to the tbd serializer (see tbd.py) to produce a
text-based dylib stub.

Only headers, load commands and the symbol table are read. Structures and
constants are taken from the Mach-O headers (loader.h, nlist.h, fat.h).

Reference/Documentation links:
- https://opensource.apple.com/source/xnu/xnu-2050.18.24/EXTERNAL_HEADERS/mach-o/loader.h
- https://opensource.apple.com/source/xnu/xnu-2050.18.24/EXTERNAL_HEADERS/mach-o/nlist.h
- https://opensource.apple.com/source/xnu/xnu-2050.18.24/EXTERNAL_HEADERS/mach-o/fat.h
- https://github.com/aidansteele/osx-abi-macho-file-format-reference
"""

__version__ = "2026.10.19"

import argparse
import logging
import os
import struct
import sys
from collections import namedtuple

from .tbd import format_tbd, descriptor_to_json

log = logging.getLogger(__name__)


# === EXCEPTION CLASSES ===
class MachOError(Exception):
    """Base exception for Mach-O parsing errors."""

    def __init__(self, message, slice_index=None):
        super().__init__(message)
        self.slice_index = slice_index

    def __str__(self):
        message = super().__str__()
        if self.slice_index is None:
            return message
        return f"slice {self.slice_index}: {message}"

class MachOParseError(MachOError):
    """Exception raised when parsing fails."""
    pass

class MachOValidationError(MachOError):
    """Exception raised when validation fails."""
    pass

class MachOSecurityError(MachOError):
    """Exception raised when security limits are exceeded."""
    pass

class MalformedInputError(MachOParseError):
    """The input is neither a recognized thin nor FAT Mach-O."""
    pass

class UnsupportedFormatError(MalformedInputError):
    """The magic number matches no known Mach-O container."""

    def __init__(self, magic, slice_index=None):
        super().__init__(f"Unsupported format, magic 0x{magic:08X}", slice_index)
        self.magic = magic

class TruncatedCommandError(MachOParseError):
    """A load command does not fit in the bytes available to it."""

    def __init__(self, message, command_index, cmd=None, slice_index=None):
        if cmd is not None:
            message = f"load command {command_index} ({format_load_command(cmd)}): {message}"
        else:
            message = f"load command {command_index}: {message}"
        super().__init__(message, slice_index)
        self.command_index = command_index
        self.cmd = cmd

class UnsupportedArchitectureError(MachOError):
    """The CPU type/subtype pair is not one we produce stubs for."""

    def __init__(self, cputype, cpusubtype, slice_index=None):
        super().__init__(
            f"Unsupported arch (cputype=0x{cputype:x}, cpusubtype=0x{cpusubtype:x})",
            slice_index,
        )
        self.cputype = cputype
        self.cpusubtype = cpusubtype

class NoArchitecturesError(MachOError):
    """Not a single architecture slice could be parsed."""

    def __init__(self, warnings):
        super().__init__("No architecture successfully parsed")
        self.warnings = list(warnings)


# === SAFETY CONSTANTS ===
MAX_FILE_SIZE = 1024 * 1024 * 1024  # 1GB limit
MAX_LOAD_COMMANDS = 10000
MAX_FAT_ARCHS = 50
MIN_MACHO_SIZE = 4  # enough for the magic, everything else is bounds-checked


def two_way_dict(pairs):
    return dict([(e[1], e[0]) for e in pairs] + pairs)


# === MACH-O CONSTANTS ===
# Struct formats, prefixed with the slice byte order at use
MACHO_HEADER_FORMAT_32 = "IIIIIII"
MACHO_HEADER_FORMAT_64 = "IIIIIIII"
LOAD_COMMAND_FORMAT = "II"
DYLIB_COMMAND_FORMAT = "IIIIII"  # cmd, cmdsize, name offset, timestamp, current, compat
SYMTAB_COMMAND_FORMAT = "IIIIII"
NLIST_FORMAT_32 = "IBBHI"  # n_strx, n_type, n_sect, n_desc, n_value
NLIST_FORMAT_64 = "IBBHQ"
FAT_HEADER_FORMAT = "II"
FAT_ARCH_FORMAT = "IIIII"  # cputype, cpusubtype, offset, size, align
FAT_ARCH_FORMAT_64 = "IIQQII"  # ... plus reserved

MACHO_HEADER_SIZE_32 = struct.calcsize("<" + MACHO_HEADER_FORMAT_32)
MACHO_HEADER_SIZE_64 = struct.calcsize("<" + MACHO_HEADER_FORMAT_64)
DYLIB_COMMAND_SIZE = struct.calcsize("<" + DYLIB_COMMAND_FORMAT)

# Magic numbers as they read from the first four bytes in little-endian order
MH_MAGIC = 0xFEEDFACE
MH_CIGAM = 0xCEFAEDFE
MH_MAGIC_64 = 0xFEEDFACF
MH_CIGAM_64 = 0xCFFAEDFE
FAT_MAGIC = 0xCAFEBABE
FAT_CIGAM = 0xBEBAFECA
FAT_MAGIC_64 = 0xCAFEBABF
FAT_CIGAM_64 = 0xBFBAFECA

# Container kinds returned by classify_magic
CONTAINER_UNRECOGNIZED = 0
CONTAINER_FAT = 1
CONTAINER_32 = 32
CONTAINER_64 = 64

MAGIC_MAP = {
    MH_MAGIC: (CONTAINER_32, "<"),
    MH_CIGAM: (CONTAINER_32, ">"),
    MH_MAGIC_64: (CONTAINER_64, "<"),
    MH_CIGAM_64: (CONTAINER_64, ">"),
    FAT_MAGIC: (CONTAINER_FAT, "<"),
    FAT_CIGAM: (CONTAINER_FAT, ">"),
    FAT_MAGIC_64: (CONTAINER_FAT, "<"),
    FAT_CIGAM_64: (CONTAINER_FAT, ">"),
}

# CPU types and subtypes
CPU_ARCH_ABI64 = 0x01000000
CPU_SUBTYPE_MASK = 0xFF000000  # capability bits

CPU_TYPE_X86 = 0x7
CPU_TYPE_X86_64 = CPU_TYPE_X86 | CPU_ARCH_ABI64
CPU_TYPE_ARM = 0xC
CPU_TYPE_ARM64 = CPU_TYPE_ARM | CPU_ARCH_ABI64

CPU_SUBTYPE_ARM_V6 = 0x6
CPU_SUBTYPE_ARM_V7 = 0x9
CPU_SUBTYPE_ARM_V7S = 0xB

ARCH_UNSUPPORTED = "unsupported"

ARM_SUBTYPE_MAP = {
    CPU_SUBTYPE_ARM_V6: "armv6",
    CPU_SUBTYPE_ARM_V7: "armv7",
    CPU_SUBTYPE_ARM_V7S: "armv7s",
}

# Symbol table constants for the "n_type" field in nlist and nlist_64 structures
N_TYPE = 0x0E
N_EXT = 0x01
N_SECT = 0xE

OBJC_CLASS_MARKER = "_OBJC_CLASS"
OBJC_CLASS_PREFIX = "_OBJC_CLASS_$"
OBJC_IVAR_MARKER = "_OBJC_IVAR"
OBJC_IVAR_PREFIX = "_OBJC_IVAR_$"
OBJC_METACLASS_MARKER = "_OBJC_METACLASS"

# Mach-O dynamic linker constant
LC_REQ_DYLD = 0x80000000

load_command_types = [
    ("LC_SEGMENT", 0x1),
    ("LC_SYMTAB", 0x2),
    ("LC_THREAD", 0x4),
    ("LC_UNIXTHREAD", 0x5),
    ("LC_DYSYMTAB", 0xB),
    ("LC_LOAD_DYLIB", 0xC),
    ("LC_ID_DYLIB", 0xD),
    ("LC_LOAD_DYLINKER", 0xE),
    ("LC_ID_DYLINKER", 0xF),
    ("LC_ROUTINES", 0x11),
    ("LC_SUB_FRAMEWORK", 0x12),
    ("LC_SUB_UMBRELLA", 0x13),
    ("LC_SUB_CLIENT", 0x14),
    ("LC_SUB_LIBRARY", 0x15),
    ("LC_LOAD_WEAK_DYLIB", 0x18 | LC_REQ_DYLD),
    ("LC_SEGMENT_64", 0x19),
    ("LC_ROUTINES_64", 0x1A),
    ("LC_UUID", 0x1B),
    ("LC_RPATH", 0x1C | LC_REQ_DYLD),
    ("LC_CODE_SIGNATURE", 0x1D),
    ("LC_SEGMENT_SPLIT_INFO", 0x1E),
    ("LC_REEXPORT_DYLIB", 0x1F | LC_REQ_DYLD),
    ("LC_LAZY_LOAD_DYLIB", 0x20),
    ("LC_ENCRYPTION_INFO", 0x21),
    ("LC_DYLD_INFO", 0x22),
    ("LC_DYLD_INFO_ONLY", 0x22 | LC_REQ_DYLD),
    ("LC_LOAD_UPWARD_DYLIB", 0x23 | LC_REQ_DYLD),
    ("LC_VERSION_MIN_MACOSX", 0x24),
    ("LC_VERSION_MIN_IPHONEOS", 0x25),
    ("LC_FUNCTION_STARTS", 0x26),
    ("LC_DATA_IN_CODE", 0x29),
    ("LC_SOURCE_VERSION", 0x2A),
    ("LC_ENCRYPTION_INFO_64", 0x2C),
    ("LC_VERSION_MIN_TVOS", 0x2F),
    ("LC_VERSION_MIN_WATCHOS", 0x30),
    ("LC_BUILD_VERSION", 0x32),
    ("LC_DYLD_EXPORTS_TRIE", 0x33 | LC_REQ_DYLD),
    ("LC_DYLD_CHAINED_FIXUPS", 0x34 | LC_REQ_DYLD),
]

LOAD_COMMAND_TYPES = two_way_dict(load_command_types)

LC_SYMTAB = LOAD_COMMAND_TYPES["LC_SYMTAB"]
LC_ID_DYLIB = LOAD_COMMAND_TYPES["LC_ID_DYLIB"]
LC_REEXPORT_DYLIB = LOAD_COMMAND_TYPES["LC_REEXPORT_DYLIB"]

# Used when a library carries no LC_ID_DYLIB
DEFAULT_CURRENT_VERSION = "275.0"

PLATFORMS = ("ios", "macosx")


# === DATA MODEL ===
LoadCommand = namedtuple("LoadCommand", ["cmd", "cmdsize", "payload"])
LoadCommand.__doc__ = """A raw load command; payload includes the 8 byte cmd/cmdsize header."""

SymbolEntry = namedtuple("SymbolEntry", ["name", "n_type", "defined", "external"])


class ArchitectureRecord:
    """Classified stub contents of a single architecture slice."""

    def __init__(self, name, symbols=None, classes=None, ivars=None, weak=None, reexports=None):
        self.name = name
        self.symbols = symbols if symbols is not None else []
        self.classes = classes if classes is not None else []
        self.ivars = ivars if ivars is not None else []
        self.weak = weak if weak is not None else []
        self.reexports = reexports if reexports is not None else []

    def __eq__(self, other):
        if not isinstance(other, ArchitectureRecord):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return (f"ArchitectureRecord(name={self.name!r}, symbols={len(self.symbols)}, "
                f"classes={len(self.classes)}, ivars={len(self.ivars)}, "
                f"weak={len(self.weak)}, reexports={len(self.reexports)})")

    def to_dict(self):
        return {
            "name": self.name,
            "symbols": list(self.symbols),
            "classes": list(self.classes),
            "ivars": list(self.ivars),
            "weak": list(self.weak),
            "reexports": list(self.reexports),
        }


class LibraryDescriptor:
    """Everything the tbd serializer needs about one library.

    ``architectures`` keeps slice order. ``install_name``, ``version`` and
    ``compatibility_version`` come from the last slice that parsed. Slice and
    load command failures that were tolerated end up in ``warnings`` as
    MachOError instances.
    """

    def __init__(self, platform="ios"):
        self.architectures = []
        self.install_name = ""
        self.version = DEFAULT_CURRENT_VERSION
        self.compatibility_version = ""
        self.platform = platform
        self.warnings = []

    @property
    def arch_names(self):
        return [arch.name for arch in self.architectures]

    def get_architecture(self, name):
        for arch in self.architectures:
            if arch.name == name:
                return arch
        return None

    def to_dict(self):
        return {
            "archs": self.arch_names,
            "platform": self.platform,
            "install_name": self.install_name,
            "current_version": self.version,
            "compatibility_version": self.compatibility_version,
            "architectures": [arch.to_dict() for arch in self.architectures],
            "warnings": [str(warning) for warning in self.warnings],
        }


class TBDConfig:
    """Options for a stub generation run."""

    def __init__(self, output_path=None, echo_to_console=True, platform="ios"):
        if platform not in PLATFORMS:
            raise MachOValidationError(
                f"Unsupported platform '{platform}', only {' and '.join(PLATFORMS)} are supported"
            )
        self.output_path = output_path or None
        # Writing to a file replaces printing to the console
        self.echo_to_console = echo_to_console and self.output_path is None
        self.platform = platform

    @classmethod
    def from_args(cls, args):
        return cls(output_path=args.out, echo_to_console=args.print, platform=args.platform)


# === HELPER FUNCTIONS ===
def _validate_file_path(file_path):
    """Validate file path and return absolute path."""
    if not file_path:
        raise ValueError("File path cannot be empty")

    abs_path = os.path.abspath(file_path)
    if not os.path.exists(abs_path):
        raise FileNotFoundError(f"File not found: {abs_path}")

    return abs_path

def _validate_file_size(file_size):
    """Validate file size against security limits."""
    if file_size < MIN_MACHO_SIZE:
        raise MalformedInputError(f"File too small to be valid Mach-O: {file_size} bytes")

    if file_size > MAX_FILE_SIZE:
        raise MachOSecurityError(f"File too large: {file_size} bytes (limit: {MAX_FILE_SIZE})")

def _read_file(file_path):
    abs_path = _validate_file_path(file_path)
    _validate_file_size(os.path.getsize(abs_path))
    with open(abs_path, "rb") as fh:
        return abs_path, fh.read()

def _safe_unpack(fmt, data, offset, data_name="data", limit=None):
    """Unpack a struct at offset, refusing to read past limit (or the end of data)."""
    size = struct.calcsize(fmt)
    end = len(data) if limit is None else min(limit, len(data))
    if offset < 0 or offset + size > end:
        raise MachOParseError(
            f"Insufficient {data_name}: expected {size} bytes at offset {offset}, "
            f"{max(end - offset, 0)} available"
        )
    return struct.unpack_from(fmt, data, offset)

def _cstring(data, offset=0):
    """Return the NUL-terminated string starting at offset (or the rest of data).

    Bytes that are not UTF-8 are kept as lone surrogates, so distinct names
    stay distinct and encode back to the same bytes.
    """
    if offset >= len(data):
        return ""
    null_pos = data.find(b"\x00", offset)
    if null_pos == -1:
        null_pos = len(data)
    return data[offset:null_pos].decode("utf-8", errors="surrogateescape")

def format_load_command(cmd_value):
    """Format load command for human-readable display."""
    return LOAD_COMMAND_TYPES.get(cmd_value, f"UNKNOWN_0x{cmd_value:x}")

def format_version(version_int):
    """Convert a packed dylib version to MAJOR.MINOR.PATCH (xxxx.yy.zz nibbles)."""
    major = (version_int >> 16) & 0xFFFF
    minor = (version_int >> 8) & 0xFF
    patch = version_int & 0xFF
    return f"{major}.{minor}.{patch}"


# === CLASSIFICATION ===
def classify_magic(magic):
    """Classify a container by its magic number.

    ``magic`` is the first four bytes of the file read as a little-endian
    integer. Returns a ``(kind, byte_order)`` tuple where kind is one of
    CONTAINER_32, CONTAINER_64, CONTAINER_FAT or CONTAINER_UNRECOGNIZED and
    byte_order is the struct prefix for the container's header fields.
    """
    return MAGIC_MAP.get(magic, (CONTAINER_UNRECOGNIZED, None))

def read_magic(data):
    if len(data) < 4:
        raise MalformedInputError(f"File too small for magic number: {len(data)} bytes")
    return struct.unpack_from("<I", data, 0)[0]

def get_arch_name(cputype, cpusubtype):
    """Map a CPU type/subtype pair to a tbd architecture name."""
    if cputype == CPU_TYPE_X86:
        return "i386"
    if cputype == CPU_TYPE_X86_64:
        return "x86_64"
    if cputype == CPU_TYPE_ARM64:
        return "arm64"
    if cputype == CPU_TYPE_ARM:
        return ARM_SUBTYPE_MAP.get(cpusubtype & ~CPU_SUBTYPE_MASK, ARCH_UNSUPPORTED)
    return ARCH_UNSUPPORTED

def no_weak_symbols(symbol):
    """Default weak symbol policy: nothing is reported as weak."""
    return False

def classify_symbols(symbols, weak_symbol_policy=no_weak_symbols):
    """Partition a symbol table into tbd export lists.

    Only external symbols defined in a section are considered. Objective-C
    class and ivar symbols lose their ``_OBJC_CLASS_$``/``_OBJC_IVAR_$``
    marker, metaclasses are dropped, and the rest are exports unless
    ``weak_symbol_policy`` claims them. Returns a dict of sorted lists.
    """
    if weak_symbol_policy is None:
        weak_symbol_policy = no_weak_symbols

    exported = []
    classes = []
    ivars = []
    weak = []

    for symbol in symbols:
        if not (symbol.defined and symbol.external):
            continue
        name = symbol.name
        if not name:
            continue

        if OBJC_CLASS_MARKER in name:
            classes.append(name.replace(OBJC_CLASS_PREFIX, ""))
        elif OBJC_IVAR_MARKER in name:
            ivars.append(name.replace(OBJC_IVAR_PREFIX, ""))
        elif OBJC_METACLASS_MARKER in name:
            continue
        elif weak_symbol_policy(symbol):
            weak.append(name)
        else:
            exported.append(name)

    return {
        "symbols": sorted(exported),
        "classes": sorted(classes),
        "ivars": sorted(ivars),
        "weak": sorted(weak),
    }

def sort_reexports(reexports):
    """Longest path first; equal lengths keep the order they were found in."""
    return sorted(reexports, key=len, reverse=True)


class MachO:
    """A single-architecture Mach-O image."""

    def __init__(self, file_path=None, data=None, slice_index=None):
        if file_path is None and data is None:
            raise ValueError("Must supply either file_path or data")
        elif file_path is not None:
            self.file_path, self.data = _read_file(file_path)
        else:
            self.file_path = None
            self.data = data
            _validate_file_size(len(self.data))

        self.slice_index = slice_index
        self.magic = None
        self.byte_order = None
        self.is_64_bit = False
        self.header = {}
        self.load_commands = []
        self.symbols = []
        self.warnings = []

    @property
    def cputype(self):
        return self.header.get("cputype")

    @property
    def cpusubtype(self):
        return self.header.get("cpusubtype")

    @property
    def arch(self):
        return get_arch_name(self.cputype, self.cpusubtype)

    @property
    def bits(self):
        return 64 if self.is_64_bit else 32

    def parse(self):
        """Read header, load commands and symbol table."""
        self.header = self.get_macho_header()
        self.load_commands = self.get_load_commands()
        self.symbols = self.get_symbols()

    def get_macho_header(self):
        """Parse the mach_header / mach_header_64 of this image."""
        self.magic = read_magic(self.data)
        kind, byte_order = classify_magic(self.magic)
        if kind not in (CONTAINER_32, CONTAINER_64):
            raise UnsupportedFormatError(self.magic, self.slice_index)

        self.byte_order = byte_order
        self.is_64_bit = kind == CONTAINER_64
        fmt = byte_order + (MACHO_HEADER_FORMAT_64 if self.is_64_bit else MACHO_HEADER_FORMAT_32)
        try:
            fields = _safe_unpack(fmt, self.data, 0, "Mach-O header")
        except MachOParseError as e:
            raise MalformedInputError(str(e), self.slice_index)

        magic, cputype, cpusubtype, filetype, ncmds, sizeofcmds, flags = fields[:7]
        if ncmds > MAX_LOAD_COMMANDS:
            raise MachOSecurityError(f"Too many load commands: {ncmds}", self.slice_index)

        return {
            "magic": magic,
            "cputype": cputype,
            "cpusubtype": cpusubtype,
            "filetype": filetype,
            "ncmds": ncmds,
            "sizeofcmds": sizeofcmds,
            "flags": flags,
        }

    def get_load_commands(self):
        """Split the load command area into LoadCommand records.

        Each command's cmdsize decides where the next one starts. A command
        that does not fit ends the walk and is recorded as a warning.
        """
        load_commands = []
        header_size = MACHO_HEADER_SIZE_64 if self.is_64_bit else MACHO_HEADER_SIZE_32
        end = min(header_size + self.header["sizeofcmds"], len(self.data))
        cursor = header_size

        for cmd_index in range(self.header["ncmds"]):
            try:
                cmd, cmdsize = _safe_unpack(self.byte_order + LOAD_COMMAND_FORMAT, self.data, cursor,
                                            f"load command {cmd_index} header", limit=end)
            except MachOParseError as e:
                self._warn(TruncatedCommandError(str(e), cmd_index, slice_index=self.slice_index))
                break

            if cmdsize < 8:
                self._warn(TruncatedCommandError(f"invalid cmdsize {cmdsize}", cmd_index, cmd,
                                                 self.slice_index))
                break
            if cursor + cmdsize > end:
                self._warn(TruncatedCommandError(
                    f"cmdsize {cmdsize} exceeds the {end - cursor} bytes left", cmd_index, cmd,
                    self.slice_index))
                break

            load_commands.append(LoadCommand(cmd, cmdsize, self.data[cursor:cursor + cmdsize]))
            cursor += cmdsize

        return load_commands

    def get_dylib_info(self):
        """Extract identity and re-exports from the load commands.

        Returns a dict with install_name, current_version,
        compatibility_version and reexports. The last LC_ID_DYLIB wins.
        """
        install_name = ""
        current_version = DEFAULT_CURRENT_VERSION
        compatibility_version = ""
        reexports = []

        for cmd_index, load_command in enumerate(self.load_commands):
            if load_command.cmd not in (LC_ID_DYLIB, LC_REEXPORT_DYLIB):
                continue

            dylib = self._parse_dylib_command(cmd_index, load_command)
            if dylib is None:
                continue

            if load_command.cmd == LC_ID_DYLIB:
                install_name = dylib["dylib_name"]
                current_version = format_version(dylib["dylib_current_version"])
                compatibility_version = format_version(dylib["dylib_compat_version"])
            else:
                reexports.append(dylib["dylib_name"])

        return {
            "install_name": install_name,
            "current_version": current_version,
            "compatibility_version": compatibility_version,
            "reexports": sort_reexports(reexports),
        }

    def _parse_dylib_command(self, cmd_index, load_command):
        """Decode a dylib_command, or record a warning and return None."""
        payload = load_command.payload
        try:
            (_, _, name_offset, timestamp, current_version,
             compat_version) = _safe_unpack(self.byte_order + DYLIB_COMMAND_FORMAT, payload, 0,
                                            "dylib command")
        except MachOParseError as e:
            self._warn(TruncatedCommandError(str(e), cmd_index, load_command.cmd, self.slice_index))
            return None

        if name_offset < DYLIB_COMMAND_SIZE or name_offset >= len(payload):
            self._warn(TruncatedCommandError(
                f"name offset {name_offset} outside of the {len(payload)} byte command",
                cmd_index, load_command.cmd, self.slice_index))
            return None

        return {
            "dylib_name_offset": name_offset,
            "dylib_timestamp": timestamp,
            "dylib_current_version": current_version,
            "dylib_compat_version": compat_version,
            "dylib_name": _cstring(payload, name_offset),
        }

    def get_symtab_info(self):
        """Return the LC_SYMTAB fields, or None when the image has no symbol table."""
        for cmd_index, load_command in enumerate(self.load_commands):
            if load_command.cmd != LC_SYMTAB:
                continue
            try:
                _, _, symoff, nsyms, stroff, strsize = _safe_unpack(
                    self.byte_order + SYMTAB_COMMAND_FORMAT, load_command.payload, 0, "symtab command")
            except MachOParseError as e:
                self._warn(TruncatedCommandError(str(e), cmd_index, load_command.cmd, self.slice_index))
                continue
            return {"symoff": symoff, "nsyms": nsyms, "stroff": stroff, "strsize": strsize}
        return None

    def get_symbols(self):
        """Read every nlist entry of the symbol table."""
        symtab = self.get_symtab_info()
        if symtab is None:
            return []

        nlist_fmt = self.byte_order + (NLIST_FORMAT_64 if self.is_64_bit else NLIST_FORMAT_32)
        nlist_size = struct.calcsize(nlist_fmt)
        symoff, nsyms = symtab["symoff"], symtab["nsyms"]
        stroff, strsize = symtab["stroff"], symtab["strsize"]

        if symoff + nsyms * nlist_size > len(self.data):
            raise MachOParseError(
                f"Symbol table extends beyond image (offset={symoff}, count={nsyms})", self.slice_index)
        if stroff + strsize > len(self.data):
            raise MachOParseError(
                f"String table extends beyond image (offset={stroff}, size={strsize})", self.slice_index)

        string_table = self.data[stroff:stroff + strsize]
        symbols = []
        for idx in range(nsyms):
            n_strx, n_type, n_sect, n_desc, n_value = struct.unpack_from(
                nlist_fmt, self.data, symoff + idx * nlist_size)
            symbols.append(SymbolEntry(
                name=_cstring(string_table, n_strx) if n_strx else "",
                n_type=n_type,
                defined=(n_type & N_TYPE) == N_SECT,
                external=bool(n_type & N_EXT),
            ))
        return symbols

    def get_architecture_record(self, weak_symbol_policy=no_weak_symbols):
        """Run the full pipeline on this image.

        Returns ``(ArchitectureRecord, dylib_info)``. Raises
        UnsupportedArchitectureError before doing any work for CPUs outside
        the supported set.
        """
        if not self.header:
            self.header = self.get_macho_header()

        arch = self.arch
        if arch == ARCH_UNSUPPORTED:
            raise UnsupportedArchitectureError(self.cputype, self.cpusubtype, self.slice_index)

        log.info("%d bit %s slice", self.bits, arch)
        self.load_commands = self.get_load_commands()
        self.symbols = self.get_symbols()
        dylib_info = self.get_dylib_info()
        exports = classify_symbols(self.symbols, weak_symbol_policy)

        record = ArchitectureRecord(
            name=arch,
            symbols=exports["symbols"],
            classes=exports["classes"],
            ivars=exports["ivars"],
            weak=exports["weak"],
            reexports=dylib_info["reexports"],
        )
        return record, dylib_info

    def _warn(self, error):
        log.warning("%s", error)
        self.warnings.append(error)


class UniversalMachO:
    """A thin or Universal/FAT Mach-O library and the stub collected from it."""

    def __init__(self, file_path=None, data=None):
        if file_path is None and data is None:
            raise ValueError("Must supply either file_path or data")
        elif file_path is not None:
            self.file_path, self.data = _read_file(file_path)
        else:
            self.file_path = None
            self.data = data
            _validate_file_size(len(self.data))

        self.magic = read_magic(self.data)
        kind, self.byte_order = classify_magic(self.magic)
        if kind == CONTAINER_UNRECOGNIZED:
            raise UnsupportedFormatError(self.magic)

        self.is_fat = kind == CONTAINER_FAT
        self.slices = self._parse_fat_header() if self.is_fat else []

    def _parse_fat_header(self):
        """Read the fat_arch table. Returns one dict per slice in on-disk order."""
        is_64 = self.magic in (FAT_MAGIC_64, FAT_CIGAM_64)
        arch_fmt = self.byte_order + (FAT_ARCH_FORMAT_64 if is_64 else FAT_ARCH_FORMAT)
        arch_size = struct.calcsize(arch_fmt)

        try:
            _, nfat_arch = _safe_unpack(self.byte_order + FAT_HEADER_FORMAT, self.data, 0, "FAT header")
        except MachOParseError as e:
            raise MalformedInputError(str(e))

        if nfat_arch == 0:
            raise MalformedInputError("FAT binary contains no architectures")
        if nfat_arch > MAX_FAT_ARCHS:
            raise MalformedInputError(f"Too many architectures in FAT binary: {nfat_arch}")

        slices = []
        cursor = struct.calcsize(FAT_HEADER_FORMAT)
        for i in range(nfat_arch):
            try:
                fields = _safe_unpack(arch_fmt, self.data, cursor, f"FAT arch entry {i}")
            except MachOParseError as e:
                raise MalformedInputError(str(e))
            cputype, cpusubtype, offset, size, align = fields[:5]
            slices.append({
                "index": i,
                "cputype": cputype,
                "cpusubtype": cpusubtype,
                "offset": offset,
                "size": size,
                "align": align,
            })
            cursor += arch_size
        return slices

    def _slice_images(self):
        """Yield (slice_index, bytes) per image; an out of bounds slice yields its MachOParseError instead."""
        if not self.is_fat:
            yield None, self.data
            return

        for fat_arch in self.slices:
            offset, size = fat_arch["offset"], fat_arch["size"]
            if offset + size > len(self.data):
                yield fat_arch["index"], MachOParseError(
                    f"architecture extends beyond file (offset={offset}, size={size}, "
                    f"file_size={len(self.data)})", fat_arch["index"])
                continue
            yield fat_arch["index"], self.data[offset:offset + size]

    def parse(self, config=None, weak_symbol_policy=no_weak_symbols):
        """Collect a LibraryDescriptor from every slice that can be parsed.

        Failing slices are logged, kept in ``warnings`` and left out of the
        result. Raises NoArchitecturesError when none of them parsed.
        """
        if config is None:
            config = TBDConfig()
        descriptor = LibraryDescriptor(platform=config.platform)

        if self.is_fat:
            log.info("Universal Mach-O")

        for slice_index, image in self._slice_images():
            if isinstance(image, MachOError):
                self._skip_slice(descriptor, image, slice_index)
                continue

            try:
                macho = MachO(data=image, slice_index=slice_index)
            except MachOError as e:
                self._skip_slice(descriptor, e, slice_index)
                continue

            try:
                record, dylib_info = macho.get_architecture_record(weak_symbol_policy)
            except MachOError as e:
                # warnings recorded before the failure come first
                descriptor.warnings.extend(macho.warnings)
                self._skip_slice(descriptor, e, slice_index)
                continue
            descriptor.warnings.extend(macho.warnings)

            descriptor.architectures.append(record)
            descriptor.install_name = dylib_info["install_name"]
            descriptor.version = dylib_info["current_version"]
            descriptor.compatibility_version = dylib_info["compatibility_version"]

        if self.is_fat:
            log.info("Arch count: %d", len(descriptor.architectures))

        if not descriptor.architectures:
            raise NoArchitecturesError(descriptor.warnings)
        return descriptor

    def _skip_slice(self, descriptor, error, slice_index):
        # A thin file that is not a Mach-O image at all fails the whole parse
        if not self.is_fat and isinstance(error, MalformedInputError):
            raise error
        if error.slice_index is None:
            error.slice_index = slice_index
        log.warning("Skipping %s", error)
        descriptor.warnings.append(error)

    def get_architectures(self):
        """Architecture names as declared by the FAT header (or the image header)."""
        if self.is_fat:
            return [get_arch_name(s["cputype"], s["cpusubtype"]) for s in self.slices]
        macho = MachO(data=self.data)
        macho.header = macho.get_macho_header()
        return [macho.arch]


def parse_library(file_path=None, data=None, config=None, weak_symbol_policy=no_weak_symbols):
    """Parse a thin or FAT Mach-O library into a LibraryDescriptor."""
    return UniversalMachO(file_path=file_path, data=data).parse(config, weak_symbol_policy)


# === OUTPUT ===
def write_output(output_path, text):
    """Write text to output_path, creating the file first when it does not exist.

    Symbol names that were not UTF-8 in the image are written back as their
    original bytes.
    """
    if not os.path.exists(output_path):
        with open(output_path, "w"):
            pass

    with open(output_path, "r+", encoding="utf-8", errors="surrogateescape") as fh:
        fh.write(text)
        fh.truncate()
        fh.flush()
        os.fsync(fh.fileno())


def echo_output(text, stream=None):
    """Write text to stdout unchanged, keeping non UTF-8 names as raw bytes."""
    if stream is None:
        stream = sys.stdout
    buffer = getattr(stream, "buffer", None)
    if buffer is None:
        stream.write(text)
        stream.flush()
        return
    stream.flush()
    buffer.write(text.encode("utf-8", errors="surrogateescape"))
    buffer.flush()


class PrefixFormatter(logging.Formatter):
    """Prefix records with [+] for progress and [?] for problems."""

    def format(self, record):
        prefix = "[+] " if record.levelno < logging.WARNING else "[?] "
        return prefix + super().format(record)


def setup_logging(debug=False, stream=None):
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(PrefixFormatter("%(message)s"))
    logger = logging.getLogger("machotbd")
    logger.handlers[:] = [handler]
    logger.setLevel(logging.DEBUG if debug else logging.INFO)
    logger.propagate = False
    return logger


def main(argv=None):
    parser = argparse.ArgumentParser(description="Generate a text-based dylib stub (tbd) from a Mach-O library.")
    parser.add_argument("file", help="Path to the Mach-O library to be parsed")

    output_group = parser.add_argument_group('output options')
    output_group.add_argument(
        "-o", "--out", type=str, default=None, help="Path to the file the tbd should be written to"
    )
    output_group.add_argument(
        "-n", "--no-print", dest="print", action="store_false",
        help="Do not print the tbd to stdout"
    )
    output_group.add_argument(
        "-j", "--json", action="store_true", help="Output the collected data in JSON format instead of tbd"
    )
    output_group.add_argument(
        "-p", "--platform", type=str, default="ios",
        help=f"Platform to define in the output tbd ({', '.join(PLATFORMS)})"
    )

    filter_group = parser.add_argument_group('filter options')
    filter_group.add_argument(
        "--arch", type=str, help="Only emit the given architecture (for Universal binaries)"
    )
    parser.add_argument("-d", "--debug", action="store_true", help="Enable debug logging")

    args = parser.parse_args(argv)
    setup_logging(args.debug)

    try:
        config = TBDConfig.from_args(args)
    except MachOValidationError as e:
        log.error("%s", e)
        return 1

    try:
        descriptor = parse_library(file_path=args.file, config=config)
    except MalformedInputError as e:
        log.error("Malformed or invalid Mach-O provided, err: %s", e)
        return 1
    except NoArchitecturesError as e:
        log.error("%s", e)
        return 1
    except (OSError, ValueError) as e:
        log.error("Unable to read %s: %s", args.file, e)
        return 1
    except MachOError as e:
        log.error("%s", e)
        return 1

    if args.arch:
        record = descriptor.get_architecture(args.arch)
        if record is None:
            log.error("Architecture '%s' not found in binary. Available architectures: %s",
                      args.arch, ", ".join(descriptor.arch_names))
            return 1
        descriptor.architectures = [record]

    text = descriptor_to_json(descriptor) + "\n" if args.json else format_tbd(descriptor)

    if config.output_path:
        try:
            write_output(config.output_path, text)
        except OSError as e:
            log.error("An error occurred during I/O (%s), printing to stdout", e)
            echo_output(text)
        else:
            log.info("Wrote to %s", config.output_path)
    elif config.echo_to_console:
        echo_output(text)

    return 0


if __name__ == "__main__":
    sys.exit(main())
