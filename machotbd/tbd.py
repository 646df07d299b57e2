"""tbd, text-based dylib stub serializer

Renders a LibraryDescriptor as a version 1 tbd document (the YAML flavour
understood by ld64 and tapi). The descriptor lists are emitted in the order
they come in; sorting is the parser's job.
"""

import json
import re

LINE_WIDTH = 80

# Key column widths, so values line up the way tapi writes them
TOP_LEVEL_KEY_WIDTH = 17
EXPORT_KEY_WIDTH = 17
EXPORT_INDENT = "    "

# (tbd key, ArchitectureRecord attribute)
EXPORT_SECTIONS = [
    ("re-exports", "reexports"),
    ("symbols", "symbols"),
    ("objc-classes", "classes"),
    ("objc-ivars", "ivars"),
    ("weak-def-symbols", "weak"),
]

_YAML_INDICATORS = "-?:,[]{}#&*!|>'\"%@`"
_NEEDS_QUOTES = re.compile(r": | #|[,\[\]{}\t]")

# Plain scalars a YAML 1.1 reader resolves to null, bool, int or float
_NON_STRING = re.compile(r"""^(?:
    ~|null|Null|NULL
    |y|Y|yes|Yes|YES|n|N|no|No|NO
    |true|True|TRUE|false|False|FALSE
    |on|On|ON|off|Off|OFF
    |[-+]?0b[0-1_]+
    |[-+]?0x[0-9a-fA-F_]+
    |[-+]?[0-9][0-9_]*(?::[0-5]?[0-9])*
    |[-+]?(?:[0-9][0-9_]*)?\.[0-9._]*(?:[eE][-+]?[0-9]+)?
    |[-+]?[0-9][0-9_]*(?::[0-5]?[0-9])+\.[0-9_]*
    |[-+]?\.(?:inf|Inf|INF)
    |\.(?:nan|NaN|NAN)
)$""", re.VERBOSE)


def quote_scalar(value):
    """Single-quote a scalar when YAML would not read it back verbatim."""
    if (not value
            or value[0] in _YAML_INDICATORS
            or value != value.strip()
            or _NEEDS_QUOTES.search(value)
            or _NON_STRING.match(value)
            or value.endswith(":")):
        return "'" + value.replace("'", "''") + "'"
    return value


def format_flow_list(items, indent):
    """Format items as a YAML flow sequence, wrapping at LINE_WIDTH.

    ``indent`` is the column the opening bracket sits at; continuation lines
    are aligned with the first item.
    """
    items = [quote_scalar(item) for item in items]
    if not items:
        return "[ ]"

    lines = []
    current = "[ " + items[0]
    continuation = " " * (indent + 2)
    for item in items[1:]:
        # ", " before the item, " ]" or "," after it
        if indent + len(current) + 2 + len(item) + 2 > LINE_WIDTH:
            lines.append(current + ",")
            current = continuation + item
            indent = 0
        else:
            current += ", " + item
    lines.append(current + " ]")
    return "\n".join(lines)


def _key(name, width):
    return f"{name + ':':<{width - 1}} "


def _format_architecture(record):
    lines = []
    key = _key("archs", EXPORT_KEY_WIDTH)
    lines.append(f"  - {key}{format_flow_list([record.name], 4 + len(key))}")
    for tbd_key, attr in EXPORT_SECTIONS:
        values = getattr(record, attr)
        if not values:
            continue
        key = _key(tbd_key, EXPORT_KEY_WIDTH)
        indent = len(EXPORT_INDENT) + len(key)
        lines.append(f"{EXPORT_INDENT}{key}{format_flow_list(values, indent)}")
    return lines


def format_tbd(descriptor):
    """Render a LibraryDescriptor as tbd text."""
    lines = ["---"]

    key = _key("archs", TOP_LEVEL_KEY_WIDTH)
    lines.append(f"{key}{format_flow_list(descriptor.arch_names, len(key))}")
    lines.append(f"{_key('platform', TOP_LEVEL_KEY_WIDTH)}{descriptor.platform}")
    lines.append(f"{_key('install-name', TOP_LEVEL_KEY_WIDTH)}{quote_scalar(descriptor.install_name)}")
    lines.append(f"{_key('current-version', TOP_LEVEL_KEY_WIDTH)}{descriptor.version}")
    if descriptor.compatibility_version:
        lines.append(f"compatibility-version: {descriptor.compatibility_version}")

    if descriptor.architectures:
        lines.append("exports:")
        for record in descriptor.architectures:
            lines.extend(_format_architecture(record))

    lines.append("...")
    return "\n".join(lines) + "\n"


def descriptor_to_json(descriptor):
    """Render a LibraryDescriptor as indented JSON."""
    return json.dumps(descriptor.to_dict(), indent=2)
