"""
Serialization of a MetadataTable.

Two formats are supported, both rendered in packing order and both readable
without the blob:

- JSON sidecar (.json), loaded by the consumer at startup:
    {"format": "embedder-asset-index", "version": 1,
     "members": [{"name": "A.dll", "offset": 0, "size": 37}, ...]}

- C header (.h) compiled into the consuming application. It declares a
  static read-only lookup table:
    static const embedded_asset_t embedded_assets[] = {
        { "A.dll", 0, 37 },
        { NULL, 0, 0 }
    };
    static const size_t embedded_assets_count = 1;
  followed by the native reader (links against zlib):
    embedded_assets_find(name)                  -> entry or NULL
    embedded_assets_inflate(blob, size, entry, &out, &out_size)
    embedded_assets_inflate_all(blob, size, outs, out_sizes)
    embedded_assets_load_blob(bundle_path, &size)

Names in the header are C string literals; backslash, double quote, '?' and
any byte outside printable ASCII are written as escapes so every name
survives the round trip.
"""

import json
import os
import re
from typing import Dict, List, Union

from embedder.errors import MalformedMetadataError
from embedder.utils.metadata import AssetRecord, MetadataTable

JSON_FORMAT = 'embedder-asset-index'
JSON_VERSION = 1

HEADER_SYMBOL = 'embedded_assets'
HEADER_SENTINEL = '{ NULL, 0, 0 }'
# Blob location inside a bundle, as laid out by build_bundle()
HEADER_BLOB_PATH = 'Versions/Current/lib/Assemblies.bin'


def _coerce_count(value: object, field: str, name: str) -> int:
    # bool is an int subclass but never a valid offset/size
    if isinstance(value, bool) or not isinstance(value, int):
        raise MalformedMetadataError(f"Non-numeric {field} for {name!r}: {value!r}")
    if value < 0:
        raise MalformedMetadataError(f"Negative {field} for {name!r}: {value}")
    return value


def _build_table(records: List[AssetRecord]) -> MetadataTable:
    table = MetadataTable()
    for record in records:
        if record.name in table:
            raise MalformedMetadataError(f"Duplicate asset name in metadata: {record.name}")
        table.add(record)
    return table


class JsonMetadataCodec:
    """JSON sidecar file."""

    name = 'json'
    extension = '.json'

    def render(self, table: MetadataTable) -> str:
        members = [
            {'name': record.name, 'offset': record.offset, 'size': record.size}
            for record in table
        ]
        document = {'format': JSON_FORMAT, 'version': JSON_VERSION, 'members': members}
        return json.dumps(document, indent=2, ensure_ascii=False) + '\n'

    def parse(self, text: str) -> MetadataTable:
        try:
            document = json.loads(text)
        except ValueError as e:
            raise MalformedMetadataError(f"Invalid JSON metadata: {e}") from e

        if not isinstance(document, dict):
            raise MalformedMetadataError("Metadata root must be an object")
        if document.get('format', JSON_FORMAT) != JSON_FORMAT:
            raise MalformedMetadataError(f"Unknown metadata format: {document.get('format')!r}")
        if document.get('version', JSON_VERSION) != JSON_VERSION:
            raise MalformedMetadataError(f"Unsupported metadata version: {document.get('version')!r}")

        members = document.get('members')
        if not isinstance(members, list):
            raise MalformedMetadataError("Metadata has no 'members' list")

        records = []
        for index, member in enumerate(members):
            if not isinstance(member, dict):
                raise MalformedMetadataError(f"Member #{index} is not an object")
            missing = [key for key in ('name', 'offset', 'size') if key not in member]
            if missing:
                raise MalformedMetadataError(f"Member #{index} is missing {', '.join(missing)}")
            name = member['name']
            if not isinstance(name, str):
                raise MalformedMetadataError(f"Member #{index} has a non-string name: {name!r}")
            records.append(AssetRecord(
                name=name,
                offset=_coerce_count(member['offset'], 'offset', name),
                size=_coerce_count(member['size'], 'size', name),
            ))
        return _build_table(records)


# ============== C HEADER ==============

_SIMPLE_ESCAPES: Dict[str, int] = {
    '\\': 0x5c, '"': 0x22, "'": 0x27, '?': 0x3f,
    'a': 0x07, 'b': 0x08, 'f': 0x0c, 'n': 0x0a, 'r': 0x0d, 't': 0x09, 'v': 0x0b,
}
_OCTAL_RE = re.compile(r'[0-7]{1,3}')
_TABLE_START_RE = re.compile(r'static\s+const\s+\w+\s+(\w+)\s*\[\s*\]\s*=\s*\{\s*$')
_ENTRY_RE = re.compile(r'^\{\s*"((?:[^"\\]|\\.)*)"\s*,\s*([^,\s]+)\s*,\s*([^,\s}]+)\s*\}\s*,?$')
_SENTINEL_RE = re.compile(r'^\{\s*NULL\s*,\s*0\s*,\s*0\s*\}\s*,?$')
_DIGITS_RE = re.compile(r'^[0-9]+$')
_IDENTIFIER_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]*$')


def c_escape(name: str) -> str:
    """Encode a name as the body of a C string literal (UTF-8, octal escapes)."""
    out = []
    for byte in name.encode('utf-8'):
        if byte == 0x5c:
            out.append('\\\\')
        elif byte == 0x22:
            out.append('\\"')
        elif 0x20 <= byte < 0x7f and byte != 0x3f:  # '?' could start a trigraph
            out.append(chr(byte))
        else:
            out.append(f'\\{byte:03o}')
    return ''.join(out)


def c_unescape(literal: str) -> str:
    """Decode the body of a C string literal produced by c_escape()."""
    out = bytearray()
    i = 0
    while i < len(literal):
        ch = literal[i]
        if ch != '\\':
            out.extend(ch.encode('utf-8'))
            i += 1
            continue
        match = _OCTAL_RE.match(literal, i + 1)
        if match:
            value = int(match.group(0), 8)
            if value > 0xff:
                raise MalformedMetadataError(f"Octal escape out of range in {literal!r}")
            out.append(value)
            i = match.end()
            continue
        if i + 1 >= len(literal) or literal[i + 1] not in _SIMPLE_ESCAPES:
            raise MalformedMetadataError(f"Unsupported escape in {literal!r}")
        out.append(_SIMPLE_ESCAPES[literal[i + 1]])
        i += 2
    try:
        return out.decode('utf-8')
    except UnicodeDecodeError as e:
        raise MalformedMetadataError(f"Name is not valid UTF-8: {literal!r}") from e


_HEADER_PRELUDE = """\
/* Generated by runtime-embedder. Do not edit. */
#ifndef $$GUARD$$
#define $$GUARD$$

#include <stddef.h>
#include <stdio.h>
#include <stdlib.h>
#include <string.h>
#include <zlib.h>

#ifndef EMBEDDED_ASSET_T_DEFINED
#define EMBEDDED_ASSET_T_DEFINED
typedef struct {
    const char *name;
    size_t offset;
    size_t size;
} embedded_asset_t;
#endif
"""

# Native reader. Same contract as packer_gzip.decompress(): exact-name
# lookup, strict gzip magic check, range check against the blob, and no
# partial output on failure.
_HEADER_READER = """\
#define $$MACRO$$_OK 0
#define $$MACRO$$_ERR_RANGE (-1)
#define $$MACRO$$_ERR_CORRUPT (-2)
#define $$MACRO$$_ERR_MEMORY (-3)

#define $$MACRO$$_BLOB_PATH "$$BLOB_PATH$$"

/* Entry named exactly `name` (case-sensitive), or NULL. */
static inline const embedded_asset_t *$$SYMBOL$$_find(const char *name)
{
    size_t i;

    if (name == NULL) {
        return NULL;
    }
    for (i = 0; i < $$SYMBOL$$_count; i++) {
        if (strcmp($$SYMBOL$$[i].name, name) == 0) {
            return &$$SYMBOL$$[i];
        }
    }
    return NULL;
}

/*
 * Inflate one member of `blob` into a malloc'ed buffer owned by the caller.
 * Returns $$MACRO$$_OK, or an error code with *out left untouched.
 */
static inline int $$SYMBOL$$_inflate(const unsigned char *blob, size_t blob_size,
                                     const embedded_asset_t *asset,
                                     unsigned char **out, size_t *out_size)
{
    const unsigned char *data;
    unsigned char *buffer;
    unsigned char *grown;
    size_t capacity;
    z_stream stream;
    int status;
    int complete;

    if (blob == NULL || asset == NULL || out == NULL || out_size == NULL) {
        return $$MACRO$$_ERR_RANGE;
    }
    if (asset->offset > blob_size || asset->size > blob_size - asset->offset) {
        return $$MACRO$$_ERR_RANGE;
    }
    data = blob + asset->offset;
    if (asset->size < 2 || data[0] != 0x1f || data[1] != 0x8b) {
        return $$MACRO$$_ERR_CORRUPT;
    }

    capacity = asset->size * 2;
    buffer = (unsigned char *)malloc(capacity);
    if (buffer == NULL) {
        return $$MACRO$$_ERR_MEMORY;
    }

    memset(&stream, 0, sizeof(stream));
    if (inflateInit2(&stream, 47) != Z_OK) {
        free(buffer);
        return $$MACRO$$_ERR_MEMORY;
    }
    stream.next_in = (Bytef *)data;
    stream.avail_in = (uInt)asset->size;

    status = Z_OK;
    while (status == Z_OK) {
        if (stream.total_out >= capacity) {
            capacity += capacity / 2;
            grown = (unsigned char *)realloc(buffer, capacity);
            if (grown == NULL) {
                inflateEnd(&stream);
                free(buffer);
                return $$MACRO$$_ERR_MEMORY;
            }
            buffer = grown;
        }
        stream.next_out = buffer + stream.total_out;
        stream.avail_out = (uInt)(capacity - stream.total_out);
        status = inflate(&stream, Z_NO_FLUSH);
    }
    /* Truncated, damaged and trailing-garbage members are all rejected */
    complete = status == Z_STREAM_END && stream.avail_in == 0;
    inflateEnd(&stream);

    if (!complete) {
        free(buffer);
        return $$MACRO$$_ERR_CORRUPT;
    }
    *out = buffer;
    *out_size = (size_t)stream.total_out;
    return $$MACRO$$_OK;
}

/*
 * Inflate every member in table order. `outs` and `out_sizes` must hold
 * $$SYMBOL$$_count entries. On failure nothing stays allocated.
 */
static inline int $$SYMBOL$$_inflate_all(const unsigned char *blob, size_t blob_size,
                                         unsigned char **outs, size_t *out_sizes)
{
    size_t i;
    size_t j;
    int status;

    for (i = 0; i < $$SYMBOL$$_count; i++) {
        status = $$SYMBOL$$_inflate(blob, blob_size, &$$SYMBOL$$[i], &outs[i], &out_sizes[i]);
        if (status != $$MACRO$$_OK) {
            for (j = 0; j < i; j++) {
                free(outs[j]);
                outs[j] = NULL;
            }
            return status;
        }
    }
    return $$MACRO$$_OK;
}

/* Read <bundle_path>/$$BLOB_PATH$$ into a malloc'ed buffer, or return NULL. */
static inline unsigned char *$$SYMBOL$$_load_blob(const char *bundle_path, size_t *blob_size)
{
    const char *relative = $$MACRO$$_BLOB_PATH;
    unsigned char *blob;
    char *path;
    size_t length;
    long end = 0;
    FILE *file;

    if (bundle_path == NULL || blob_size == NULL) {
        return NULL;
    }
    length = strlen(bundle_path);
    path = (char *)malloc(length + strlen(relative) + 2);
    if (path == NULL) {
        return NULL;
    }
    memcpy(path, bundle_path, length);
    path[length] = '/';
    strcpy(path + length + 1, relative);

    file = fopen(path, "rb");
    free(path);
    if (file == NULL) {
        return NULL;
    }
    if (fseek(file, 0, SEEK_END) != 0 || (end = ftell(file)) < 0 || fseek(file, 0, SEEK_SET) != 0) {
        fclose(file);
        return NULL;
    }
    blob = (unsigned char *)malloc(end > 0 ? (size_t)end : 1);
    if (blob == NULL) {
        fclose(file);
        return NULL;
    }
    if (fread(blob, 1, (size_t)end, file) != (size_t)end) {
        free(blob);
        fclose(file);
        return NULL;
    }
    fclose(file);
    *blob_size = (size_t)end;
    return blob;
}
"""


def _fill_template(template: str, values: Dict[str, str]) -> str:
    for key, value in values.items():
        template = template.replace(f'$${key}$$', value)
    return template


class HeaderMetadataCodec:
    """
    C header with a static lookup table terminated by a NULL sentinel,
    plus inline functions to find and inflate members natively.
    """

    name = 'header'
    extension = '.h'

    def __init__(self, symbol: str = HEADER_SYMBOL, blob_path: str = HEADER_BLOB_PATH):
        """
        Args:
            symbol: C identifier of the table; also prefixes the reader functions
            blob_path: Blob location relative to a bundle root, used by <symbol>_load_blob()
        """
        if not _IDENTIFIER_RE.match(symbol):
            raise ValueError(f"Not a valid C identifier: {symbol!r}")
        self.symbol = symbol
        self.blob_path = blob_path

    def render(self, table: MetadataTable) -> str:
        values = {
            'GUARD': f"{self.symbol.upper()}_H",
            'MACRO': self.symbol.upper(),
            'SYMBOL': self.symbol,
            'BLOB_PATH': c_escape(self.blob_path),
        }
        lines = [
            _fill_template(_HEADER_PRELUDE, values),
            f"static const embedded_asset_t {self.symbol}[] = {{",
        ]
        for record in table:
            lines.append(f'    {{ "{c_escape(record.name)}", {record.offset}, {record.size} }},')
        lines.append(f"    {HEADER_SENTINEL}")
        lines.append("};")
        lines.append("")
        lines.append(f"static const size_t {self.symbol}_count = {len(table)};")
        lines.append("")
        lines.append(_fill_template(_HEADER_READER, values))
        lines.append(f"#endif /* {values['GUARD']} */")
        return '\n'.join(lines) + '\n'

    def parse(self, text: str) -> MetadataTable:
        lines = [line.strip() for line in text.splitlines()]

        start = None
        symbol = None
        for index, line in enumerate(lines):
            match = _TABLE_START_RE.search(line)
            if match:
                start, symbol = index, match.group(1)
                break
        if start is None:
            raise MalformedMetadataError("No asset table declaration found")

        records = []
        terminated = False
        for line in lines[start + 1:]:
            if not line:
                continue
            if _SENTINEL_RE.match(line):
                terminated = True
                break
            match = _ENTRY_RE.match(line)
            if match is None:
                raise MalformedMetadataError(f"Malformed table entry: {line}")
            literal, offset, size = match.groups()
            name = c_unescape(literal)
            for field, value in (('offset', offset), ('size', size)):
                if not _DIGITS_RE.match(value):
                    raise MalformedMetadataError(f"Non-numeric {field} for {name!r}: {value}")
            records.append(AssetRecord(name=name, offset=int(offset), size=int(size)))
        if not terminated:
            raise MalformedMetadataError("Asset table is not terminated")

        count_re = re.compile(rf'static\s+const\s+size_t\s+{re.escape(symbol)}_count\s*=\s*([0-9]+)\s*;')
        count_match = count_re.search(text)
        if count_match is None:
            raise MalformedMetadataError(f"Missing {symbol}_count declaration")
        if int(count_match.group(1)) != len(records):
            raise MalformedMetadataError(
                f"{symbol}_count is {count_match.group(1)} but the table has {len(records)} entries"
            )
        return _build_table(records)


CODECS = {
    JsonMetadataCodec.extension: JsonMetadataCodec,
    HeaderMetadataCodec.extension: HeaderMetadataCodec,
}


def codec_for_path(path: Union[str, os.PathLike]) -> Union[JsonMetadataCodec, HeaderMetadataCodec]:
    """Pick a codec from the file extension (.json or .h)."""
    extension = os.path.splitext(os.fspath(path))[1].lower()
    codec_cls = CODECS.get(extension)
    if codec_cls is None:
        raise ValueError(f"No metadata codec for {os.fspath(path)!r}; use one of {', '.join(CODECS)}")
    return codec_cls()


def load_metadata(path: Union[str, os.PathLike]) -> MetadataTable:
    """Read and parse a metadata file."""
    with open(path, 'r', encoding='utf-8') as f:
        return codec_for_path(path).parse(f.read())


def dump_metadata(table: MetadataTable, path: Union[str, os.PathLike]) -> None:
    """Render a table to a metadata file."""
    with open(path, 'w', encoding='utf-8', newline='\n') as f:
        f.write(codec_for_path(path).render(table))
