"""Record encoding for the local store.

Binary layout (big-endian):
    magic   : 4 bytes -> b"EFR1"
    version : 1 byte  -> 0x01
    body    : compact UTF-8 JSON of the record's to_dict()

Readers ignore unknown fields and default missing ones, so fields can be
added without migrating stored records.
"""
import json
import struct

from typing import Any, Dict

from efscloud.utils.errors import StoreError

RECORD_MAGIC = b"EFR1"
RECORD_VERSION = 1
RECORD_HDR_FMT = ">4sB"
RECORD_HDR_SIZE = struct.calcsize(RECORD_HDR_FMT)


def encode_record(doc: Dict[str, Any]) -> bytes:
    header = struct.pack(RECORD_HDR_FMT, RECORD_MAGIC, RECORD_VERSION)
    body = json.dumps(doc, ensure_ascii=False, separators=(",", ":")).encode("utf-8")
    return header + body


def decode_record(data: bytes) -> Dict[str, Any]:
    if len(data) < RECORD_HDR_SIZE:
        raise StoreError("record is too small or corrupt")
    magic, ver = struct.unpack(RECORD_HDR_FMT, data[:RECORD_HDR_SIZE])
    if magic != RECORD_MAGIC:
        raise StoreError("invalid record magic")
    if ver > RECORD_VERSION:
        raise StoreError(f"unsupported record version {ver}")
    try:
        return json.loads(data[RECORD_HDR_SIZE:].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise StoreError(f"corrupt record body: {e}") from None
