"""Slice orchestration over thin and FAT libraries."""

import pytest

from machotbd import (
    LibraryDescriptor,
    MalformedInputError,
    NoArchitecturesError,
    TBDConfig,
    UniversalMachO,
    UnsupportedArchitectureError,
    UnsupportedFormatError,
    parse_library,
)
from machotbd.machotbd import (
    CPU_TYPE_ARM,
    CPU_TYPE_ARM64,
    CPU_TYPE_X86_64,
    MAX_FAT_ARCHS,
    MAX_LOAD_COMMANDS,
    MachOParseError,
    MachOSecurityError,
    MachOValidationError,
    TruncatedCommandError,
)
from machobuilder import EXTERNAL_DEFINED, build_fat, build_macho, id_dylib, reexport_dylib

PPC = 0x12


def arm64_image(name="/usr/lib/libwidget.dylib", version=0x10000, symbols=(("_arm64_only", EXTERNAL_DEFINED),)):
    return build_macho(cputype=CPU_TYPE_ARM64, cpusubtype=0,
                       commands=[id_dylib(name, current_version=version)], symbols=list(symbols))


def test_thin_library(dylib_image):
    descriptor = parse_library(data=dylib_image)
    assert isinstance(descriptor, LibraryDescriptor)
    assert descriptor.arch_names == ["x86_64"]
    assert descriptor.install_name == "/usr/lib/libwidget.dylib"
    assert descriptor.version == "2.48.0"
    assert descriptor.compatibility_version == "1.0.0"
    assert descriptor.platform == "ios"
    assert descriptor.warnings == []

    record = descriptor.architectures[0]
    assert record.symbols == ["_alpha", "_zeta"]
    assert record.classes == ["_NSGadget", "_NSWidget"]
    assert record.ivars == ["_NSWidget._size"]
    assert record.weak == []
    assert record.reexports == ["/usr/lib/libgadget.dylib", "/usr/lib/libz.dylib"]


def test_thin_library_from_path(dylib_image, write_binary):
    descriptor = parse_library(file_path=write_binary(dylib_image))
    assert descriptor.arch_names == ["x86_64"]


def test_platform_comes_from_config(dylib_image):
    descriptor = parse_library(data=dylib_image, config=TBDConfig(platform="macosx"))
    assert descriptor.platform == "macosx"


def test_fat_library_keeps_slice_order(dylib_image):
    armv7 = build_macho(cputype=CPU_TYPE_ARM, cpusubtype=9, is_64_bit=False,
                        commands=[id_dylib("/usr/lib/libwidget.dylib")])
    data = build_fat([
        (CPU_TYPE_ARM, 9, armv7),
        (CPU_TYPE_ARM64, 0, arm64_image()),
        (CPU_TYPE_X86_64, 3, dylib_image),
    ])
    macho = UniversalMachO(data=data)
    assert macho.is_fat
    assert macho.get_architectures() == ["armv7", "arm64", "x86_64"]

    descriptor = macho.parse()
    assert descriptor.arch_names == ["armv7", "arm64", "x86_64"]
    assert descriptor.get_architecture("arm64").symbols == ["_arm64_only"]
    assert descriptor.get_architecture("armv7").symbols == []


def test_fat_with_unsupported_slice_is_not_fatal(dylib_image):
    ppc = build_macho(cputype=PPC, cpusubtype=0, is_64_bit=False, byte_order=">")
    descriptor = parse_library(data=build_fat([(CPU_TYPE_X86_64, 3, dylib_image), (PPC, 0, ppc)]))

    assert descriptor.arch_names == ["x86_64"]
    assert len(descriptor.warnings) == 1
    warning = descriptor.warnings[0]
    assert isinstance(warning, UnsupportedArchitectureError)
    assert warning.slice_index == 1
    assert warning.cputype == PPC
    assert str(warning).startswith("slice 1:")


def test_last_successful_slice_sets_identity():
    data = build_fat([
        (CPU_TYPE_X86_64, 3, build_macho(commands=[id_dylib("/usr/lib/libfirst.dylib", 0x10000)])),
        (CPU_TYPE_ARM64, 0, arm64_image("/usr/lib/libsecond.dylib", 0x20000)),
    ])
    descriptor = parse_library(data=data)
    assert descriptor.install_name == "/usr/lib/libsecond.dylib"
    assert descriptor.version == "2.0.0"


def test_failed_last_slice_does_not_clobber_identity():
    ppc = build_macho(cputype=PPC, cpusubtype=0, commands=[id_dylib("/usr/lib/libppc.dylib")])
    data = build_fat([
        (CPU_TYPE_ARM64, 0, arm64_image("/usr/lib/libwidget.dylib", 0x30000)),
        (PPC, 0, ppc),
    ])
    descriptor = parse_library(data=data)
    assert descriptor.install_name == "/usr/lib/libwidget.dylib"
    assert descriptor.version == "3.0.0"


def test_fat_64_container(dylib_image):
    data = build_fat([(CPU_TYPE_X86_64, 3, dylib_image), (CPU_TYPE_ARM64, 0, arm64_image())], is_64_bit=True)
    assert parse_library(data=data).arch_names == ["x86_64", "arm64"]


def test_fat_slice_with_garbage_is_skipped(dylib_image):
    data = build_fat([(CPU_TYPE_ARM64, 0, b"\x7fELF" + b"\x00" * 60), (CPU_TYPE_X86_64, 3, dylib_image)])
    descriptor = parse_library(data=data)
    assert descriptor.arch_names == ["x86_64"]
    assert isinstance(descriptor.warnings[0], UnsupportedFormatError)
    assert descriptor.warnings[0].slice_index == 0


def test_fat_slice_out_of_bounds_is_skipped(dylib_image):
    data = bytearray(build_fat([(CPU_TYPE_X86_64, 3, dylib_image), (CPU_TYPE_ARM64, 0, arm64_image())]))
    # second fat_arch entry: size field lives 12 bytes into the 20 byte record
    data[8 + 20 + 12:8 + 20 + 16] = (0x7FFFFFFF).to_bytes(4, "big")
    descriptor = parse_library(data=bytes(data))
    assert descriptor.arch_names == ["x86_64"]
    assert isinstance(descriptor.warnings[0], MachOParseError)
    assert descriptor.warnings[0].slice_index == 1


def test_slice_command_warnings_are_collected(dylib_image):
    broken = build_macho(commands=[reexport_dylib("/usr/lib/libz.dylib")[:8] + b"\x00" * 8])
    # reexport_dylib's cmdsize still claims the full length; rewrite it to the 16 bytes kept
    broken = broken[:32 + 4] + (16).to_bytes(4, "little") + broken[32 + 8:]
    descriptor = parse_library(data=build_fat([(CPU_TYPE_X86_64, 3, broken)]))
    assert descriptor.arch_names == ["x86_64"]
    assert [type(w) for w in descriptor.warnings] == [TruncatedCommandError]
    assert descriptor.warnings[0].slice_index == 0


def test_slice_warnings_keep_their_order(dylib_image):
    broken = bytearray(build_macho(symbols=[("_x", EXTERNAL_DEFINED)]))
    # ncmds claims a second command past the LC_SYMTAB, and nsyms runs off the image
    broken[16:20] = (2).to_bytes(4, "little")
    broken[32 + 12:32 + 16] = (0x10000).to_bytes(4, "little")
    descriptor = parse_library(data=build_fat([(CPU_TYPE_ARM64, 0, bytes(broken)),
                                               (CPU_TYPE_X86_64, 3, dylib_image)]))

    assert descriptor.arch_names == ["x86_64"]
    assert [type(w) for w in descriptor.warnings] == [TruncatedCommandError, MachOParseError]
    assert [w.slice_index for w in descriptor.warnings] == [0, 0]


def test_too_many_load_commands_skips_slice(dylib_image):
    flooded = bytearray(arm64_image())
    flooded[16:20] = (MAX_LOAD_COMMANDS + 1).to_bytes(4, "little")
    descriptor = parse_library(data=build_fat([(CPU_TYPE_X86_64, 3, dylib_image),
                                               (CPU_TYPE_ARM64, 0, bytes(flooded))]))

    assert descriptor.arch_names == ["x86_64"]
    assert [type(w) for w in descriptor.warnings] == [MachOSecurityError]
    assert descriptor.warnings[0].slice_index == 1


def test_file_over_size_limit_is_refused(dylib_image, write_binary, monkeypatch):
    monkeypatch.setattr("machotbd.machotbd.MAX_FILE_SIZE", len(dylib_image) - 1)
    with pytest.raises(MachOSecurityError):
        parse_library(data=dylib_image)
    with pytest.raises(MachOSecurityError):
        parse_library(file_path=write_binary(dylib_image))


def test_fat_with_too_many_architectures_is_malformed():
    data = b"\xca\xfe\xba\xbe" + (MAX_FAT_ARCHS + 1).to_bytes(4, "big") + b"\x00" * 20 * (MAX_FAT_ARCHS + 1)
    with pytest.raises(MalformedInputError, match="Too many architectures"):
        parse_library(data=data)


@pytest.mark.parametrize("data", [
    b"\x7fELF\x02\x01\x01" + b"\x00" * 57,
    b"PK\x03\x04" + b"\x00" * 60,
    b"\x00" * 64,
])
def test_unrecognized_thin_magic_is_malformed(data):
    with pytest.raises(MalformedInputError):
        parse_library(data=data)


def test_tiny_file_is_malformed():
    with pytest.raises(MalformedInputError):
        parse_library(data=b"\xcf\xfa")


def test_truncated_header_is_malformed():
    with pytest.raises(MalformedInputError):
        parse_library(data=build_macho()[:20])


def test_fat_without_architectures_is_malformed():
    with pytest.raises(MalformedInputError):
        parse_library(data=b"\xca\xfe\xba\xbe" + b"\x00" * 4)


def test_fat_with_truncated_arch_table_is_malformed():
    with pytest.raises(MalformedInputError):
        parse_library(data=b"\xca\xfe\xba\xbe" + (3).to_bytes(4, "big") + b"\x00" * 20)


def test_thin_unsupported_architecture():
    image = build_macho(cputype=PPC, cpusubtype=0)
    with pytest.raises(NoArchitecturesError) as excinfo:
        parse_library(data=image)
    assert [type(w) for w in excinfo.value.warnings] == [UnsupportedArchitectureError]


def test_fat_with_only_unsupported_slices():
    ppc = build_macho(cputype=PPC, cpusubtype=0)
    with pytest.raises(NoArchitecturesError) as excinfo:
        parse_library(data=build_fat([(PPC, 0, ppc), (CPU_TYPE_ARM, 12, ppc)]))
    assert len(excinfo.value.warnings) == 2


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        parse_library(file_path="/nonexistent/libnothing.dylib")


def test_parse_requires_input():
    with pytest.raises(ValueError):
        UniversalMachO()


def test_config_rejects_unknown_platform():
    with pytest.raises(MachOValidationError):
        TBDConfig(platform="watchos")


def test_config_output_path_disables_console_echo():
    assert TBDConfig().echo_to_console is True
    assert TBDConfig(output_path="out.tbd").echo_to_console is False
    assert TBDConfig(echo_to_console=False).echo_to_console is False
