"""Binary codec for action payloads, driven by an account's published schema.

An ``AbiSchema`` wraps the JSON ABI a ledger account publishes and turns
plain dicts into the byte layout the node expects (and back). The same codec
serializes the transaction envelope and the ABI definition itself, using the
descriptors at the bottom of this module.
"""

import struct
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import ValidationError
from .names import int_to_name, name_to_int
from .signer import (
    KEY_TYPE_EM,
    PUBLIC_KEY_PREFIX,
    SIGNATURE_PREFIX,
    public_key_bytes,
    signature_bytes,
)

_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S"


class _Reader:
    def __init__(self, data: bytes) -> None:
        self.data = bytes(data)
        self.pos = 0

    @property
    def exhausted(self) -> bool:
        return self.pos >= len(self.data)

    def read(self, size: int) -> bytes:
        if self.pos + size > len(self.data):
            raise ValidationError("payload truncated")
        chunk = self.data[self.pos : self.pos + size]
        self.pos += size
        return chunk

    def unpack(self, fmt: str):
        return struct.unpack(fmt, self.read(struct.calcsize(fmt)))[0]


def write_varuint32(buf: bytearray, value: int) -> None:
    value = int(value)
    if value < 0 or value > 0xFFFFFFFF:
        raise ValueError(f"varuint32 out of range: {value}")
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            buf.append(byte | 0x80)
        else:
            buf.append(byte)
            return


def read_varuint32(reader: _Reader) -> int:
    result = 0
    shift = 0
    while True:
        byte = reader.read(1)[0]
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result
        shift += 7
        if shift > 35:
            raise ValidationError("varuint32 overflow")


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, str):
        text = value.rstrip("Z")
        parsed = datetime.fromisoformat(text)
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise TypeError(f"expected a timestamp, got {value!r}")


def _write_time_point_sec(buf: bytearray, value: Any) -> None:
    seconds = value if isinstance(value, int) else int(_parse_time(value).timestamp())
    buf += struct.pack("<I", seconds)


def _read_time_point_sec(reader: _Reader) -> str:
    seconds = reader.unpack("<I")
    return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime(_TIME_FORMAT)


def _write_time_point(buf: bytearray, value: Any) -> None:
    if isinstance(value, int):
        micros = value
    else:
        moment = _parse_time(value)
        micros = int(moment.timestamp()) * 1_000_000 + moment.microsecond
    buf += struct.pack("<q", micros)


def _read_time_point(reader: _Reader) -> str:
    micros = reader.unpack("<q")
    moment = datetime.fromtimestamp(micros // 1_000_000, tz=timezone.utc)
    return f"{moment.strftime(_TIME_FORMAT)}.{(micros % 1_000_000) // 1000:03d}"


def _write_string(buf: bytearray, value: Any) -> None:
    if not isinstance(value, str):
        raise TypeError(f"expected a string, got {type(value).__name__}")
    raw = value.encode("utf-8")
    write_varuint32(buf, len(raw))
    buf += raw


def _read_string(reader: _Reader) -> str:
    size = read_varuint32(reader)
    return reader.read(size).decode("utf-8")


def _as_bytes(value: Any) -> bytes:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)
    raise TypeError(f"expected bytes or hex, got {type(value).__name__}")


def _write_bytes(buf: bytearray, value: Any) -> None:
    raw = _as_bytes(value)
    write_varuint32(buf, len(raw))
    buf += raw


def _read_bytes(reader: _Reader) -> str:
    return reader.read(read_varuint32(reader)).hex()


def _write_bool(buf: bytearray, value: Any) -> None:
    if value not in (True, False, 0, 1):
        raise TypeError(f"expected a boolean, got {value!r}")
    buf.append(1 if value else 0)


def _read_bool(reader: _Reader) -> bool:
    return reader.read(1) != b"\x00"


def _write_checksum256(buf: bytearray, value: Any) -> None:
    raw = _as_bytes(value)
    if len(raw) != 32:
        raise ValueError("checksum256 must be 32 bytes")
    buf += raw


def _write_name(buf: bytearray, value: Any) -> None:
    buf += struct.pack("<Q", name_to_int(value))


def _read_name(reader: _Reader) -> str:
    return int_to_name(reader.unpack("<Q"))


def _write_public_key(buf: bytearray, value: Any) -> None:
    buf.append(KEY_TYPE_EM)
    buf += public_key_bytes(value)


def _read_public_key(reader: _Reader) -> str:
    key_type = reader.read(1)[0]
    if key_type != KEY_TYPE_EM:
        raise ValidationError(f"unsupported key type {key_type}")
    return PUBLIC_KEY_PREFIX + reader.read(33).hex()


def _write_signature(buf: bytearray, value: Any) -> None:
    buf.append(KEY_TYPE_EM)
    buf += signature_bytes(value)


def _read_signature(reader: _Reader) -> str:
    key_type = reader.read(1)[0]
    if key_type != KEY_TYPE_EM:
        raise ValidationError(f"unsupported signature type {key_type}")
    return SIGNATURE_PREFIX + reader.read(65).hex()


def _symbol_code_bytes(code: str) -> bytes:
    if not code or len(code) > 7 or not code.isalpha() or not code.isupper():
        raise ValueError(f"invalid symbol code {code!r}")
    return code.encode("ascii").ljust(7, b"\x00")


def _write_symbol(buf: bytearray, value: Any) -> None:
    precision, _, code = str(value).partition(",")
    buf.append(int(precision))
    buf += _symbol_code_bytes(code.strip())


def _read_symbol(reader: _Reader) -> str:
    precision = reader.read(1)[0]
    code = reader.read(7).rstrip(b"\x00").decode("ascii")
    return f"{precision},{code}"


def _write_symbol_code(buf: bytearray, value: Any) -> None:
    buf += _symbol_code_bytes(str(value)) + b"\x00"


def _read_symbol_code(reader: _Reader) -> str:
    return reader.read(8).rstrip(b"\x00").decode("ascii")


def _write_asset(buf: bytearray, value: Any) -> None:
    amount_text, _, code = str(value).strip().partition(" ")
    try:
        amount = Decimal(amount_text)
    except InvalidOperation as exc:
        raise ValueError(f"invalid asset amount {amount_text!r}") from exc
    precision = len(amount_text.partition(".")[2])
    buf += struct.pack("<q", int(amount.scaleb(precision)))
    buf.append(precision)
    buf += _symbol_code_bytes(code.strip())


def _read_asset(reader: _Reader) -> str:
    amount = reader.unpack("<q")
    precision = reader.read(1)[0]
    code = reader.read(7).rstrip(b"\x00").decode("ascii")
    sign = "-" if amount < 0 else ""
    whole, frac = divmod(abs(amount), 10 ** precision)
    if precision:
        return f"{sign}{whole}.{frac:0{precision}d} {code}"
    return f"{sign}{whole} {code}"


def _write_varint32(buf: bytearray, value: Any) -> None:
    value = int(value)
    write_varuint32(buf, ((value << 1) ^ (value >> 31)) & 0xFFFFFFFF)


def _read_varint32(reader: _Reader) -> int:
    raw = read_varuint32(reader)
    return (raw >> 1) ^ -(raw & 1)


def _packer(fmt: str) -> Tuple[Callable[[bytearray, Any], None], Callable[[_Reader], Any]]:
    cast = float if fmt in ("<f", "<d") else int

    def write(buf: bytearray, value: Any) -> None:
        if isinstance(value, bool):
            raise TypeError("expected a number, got a boolean")
        buf += struct.pack(fmt, cast(value))

    return write, lambda reader: reader.unpack(fmt)


_BUILTINS: Dict[str, Tuple[Callable[[bytearray, Any], None], Callable[[_Reader], Any]]] = {
    "bool": (_write_bool, _read_bool),
    "int8": _packer("<b"),
    "uint8": _packer("<B"),
    "int16": _packer("<h"),
    "uint16": _packer("<H"),
    "int32": _packer("<i"),
    "uint32": _packer("<I"),
    "int64": _packer("<q"),
    "uint64": _packer("<Q"),
    "float32": _packer("<f"),
    "float64": _packer("<d"),
    "varuint32": (write_varuint32, read_varuint32),
    "varint32": (_write_varint32, _read_varint32),
    "string": (_write_string, _read_string),
    "bytes": (_write_bytes, _read_bytes),
    "name": (_write_name, _read_name),
    "checksum256": (_write_checksum256, lambda reader: reader.read(32).hex()),
    "time_point_sec": (_write_time_point_sec, _read_time_point_sec),
    "time_point": (_write_time_point, _read_time_point),
    "public_key": (_write_public_key, _read_public_key),
    "signature": (_write_signature, _read_signature),
    "symbol": (_write_symbol, _read_symbol),
    "symbol_code": (_write_symbol_code, _read_symbol_code),
    "asset": (_write_asset, _read_asset),
}


class AbiSchema:
    """Resolved schema for a single ledger account."""

    def __init__(self, account: str, abi: Dict[str, Any]) -> None:
        if not isinstance(abi, dict):
            raise ValidationError(f"schema for {account or 'envelope'} is not an object")
        self.account = account
        self.abi = abi
        try:
            self.types: Dict[str, str] = {
                item["new_type_name"]: item["type"] for item in abi.get("types") or []
            }
            self.structs: Dict[str, Dict[str, Any]] = {
                item["name"]: item for item in abi.get("structs") or []
            }
            self.variants: Dict[str, List[str]] = {
                item["name"]: list(item["types"]) for item in abi.get("variants") or []
            }
            self.actions: Dict[str, str] = {
                item["name"]: item["type"] for item in abi.get("actions") or []
            }
            self.tables: Dict[str, str] = {
                item["name"]: item["type"] for item in abi.get("tables") or []
            }
        except (KeyError, TypeError) as exc:
            raise ValidationError(f"malformed schema for {account or 'envelope'}: missing {exc}") from exc
        for struct_name, struct in self.structs.items():
            for item in struct.get("fields") or []:
                if not isinstance(item, dict) or "name" not in item or "type" not in item:
                    raise ValidationError(f"malformed schema for {account}: bad field in struct {struct_name!r}")

    def __repr__(self) -> str:
        return f"AbiSchema({self.account!r}, actions={sorted(self.actions)})"

    def action_type(self, action: str) -> str:
        try:
            return self.actions[action]
        except KeyError:
            raise ValidationError(f"{self.account} has no action {action!r}") from None

    def table_type(self, table: str) -> str:
        try:
            return self.tables[table]
        except KeyError:
            raise ValidationError(f"{self.account} has no table {table!r}") from None

    def encode_action(self, action: str, data: Dict[str, Any]) -> bytes:
        return self.encode(self.action_type(action), data, path=f"{self.account}::{action}")

    def decode_action(self, action: str, raw: bytes) -> Dict[str, Any]:
        return self.decode(self.action_type(action), raw)

    def encode(self, type_name: str, value: Any, *, path: Optional[str] = None) -> bytes:
        buf = bytearray()
        self._write(buf, type_name, value, path or type_name)
        return bytes(buf)

    def decode(self, type_name: str, raw: bytes) -> Any:
        reader = _Reader(raw)
        value = self._read(reader, type_name)
        if not reader.exhausted:
            raise ValidationError(f"{len(reader.data) - reader.pos} trailing bytes after {type_name}")
        return value

    def _resolve(self, type_name: str) -> str:
        seen = set()
        while type_name in self.types:
            if type_name in seen:
                raise ValidationError(f"type alias cycle at {type_name!r}")
            seen.add(type_name)
            type_name = self.types[type_name]
        return type_name

    def _fields(self, struct_name: str) -> List[Dict[str, str]]:
        definition = self.structs.get(struct_name)
        if definition is None:
            raise ValidationError(f"{self.account}: unknown struct {struct_name!r}")
        base = definition.get("base") or ""
        fields = self._fields(self._resolve(base)) if base else []
        return fields + list(definition.get("fields") or [])

    def _write(self, buf: bytearray, type_name: str, value: Any, path: str) -> None:
        if type_name.endswith("$"):
            type_name = type_name[:-1]
        if type_name.endswith("[]"):
            if not isinstance(value, (list, tuple)):
                raise ValidationError(f"{path}: expected a list")
            write_varuint32(buf, len(value))
            for idx, item in enumerate(value):
                self._write(buf, type_name[:-2], item, f"{path}[{idx}]")
            return
        if type_name.endswith("?"):
            if value is None:
                buf.append(0)
                return
            buf.append(1)
            self._write(buf, type_name[:-1], value, path)
            return
        resolved = self._resolve(type_name)
        if resolved != type_name:
            self._write(buf, resolved, value, path)
            return
        codec = _BUILTINS.get(resolved)
        if codec is not None:
            try:
                codec[0](buf, value)
            except (TypeError, ValueError, OverflowError, struct.error) as exc:
                raise ValidationError(f"{path}: {exc}") from exc
            return
        if resolved in self.variants:
            self._write_variant(buf, resolved, value, path)
            return
        if resolved not in self.structs:
            raise ValidationError(f"{path}: unknown type {resolved!r}")
        if not isinstance(value, dict):
            raise ValidationError(f"{path}: expected an object")
        fields = self._fields(resolved)
        unknown = set(value) - {item["name"] for item in fields}
        if unknown:
            raise ValidationError(f"{path}: unknown fields {sorted(unknown)}")
        for item in fields:
            field_name, field_type = item["name"], item["type"]
            if field_name not in value:
                if field_type.endswith("$"):
                    break
                if field_type.endswith("?"):
                    buf.append(0)
                    continue
                raise ValidationError(f"{path}.{field_name}: missing field")
            self._write(buf, field_type, value[field_name], f"{path}.{field_name}")

    def _write_variant(self, buf: bytearray, variant: str, value: Any, path: str) -> None:
        options = self.variants[variant]
        if not isinstance(value, (list, tuple)) or len(value) != 2 or value[0] not in options:
            raise ValidationError(f"{path}: expected [type, value] with type in {options}")
        write_varuint32(buf, options.index(value[0]))
        self._write(buf, value[0], value[1], path)

    def _read(self, reader: _Reader, type_name: str) -> Any:
        if type_name.endswith("$"):
            type_name = type_name[:-1]
        if type_name.endswith("[]"):
            return [self._read(reader, type_name[:-2]) for _ in range(read_varuint32(reader))]
        if type_name.endswith("?"):
            return self._read(reader, type_name[:-1]) if reader.read(1) != b"\x00" else None
        resolved = self._resolve(type_name)
        codec = _BUILTINS.get(resolved)
        if codec is not None:
            return codec[1](reader)
        if resolved in self.variants:
            options = self.variants[resolved]
            index = read_varuint32(reader)
            if index >= len(options):
                raise ValidationError(f"variant index {index} out of range for {resolved}")
            return [options[index], self._read(reader, options[index])]
        if resolved not in self.structs:
            raise ValidationError(f"unknown type {resolved!r}")
        result: Dict[str, Any] = {}
        for item in self._fields(resolved):
            if item["type"].endswith("$") and reader.exhausted:
                break
            result[item["name"]] = self._read(reader, item["type"])
        return result


def _struct(name: str, fields: List[Tuple[str, str]], base: str = "") -> Dict[str, Any]:
    return {
        "name": name,
        "base": base,
        "fields": [{"name": field_name, "type": field_type} for field_name, field_type in fields],
    }


TRANSACTION_ABI: Dict[str, Any] = {
    "version": "eosio::abi/1.1",
    "structs": [
        _struct("permission_level", [("actor", "name"), ("permission", "name")]),
        _struct(
            "action",
            [
                ("account", "name"),
                ("name", "name"),
                ("authorization", "permission_level[]"),
                ("data", "bytes"),
            ],
        ),
        _struct("extension", [("type", "uint16"), ("data", "bytes")]),
        _struct(
            "transaction_header",
            [
                ("expiration", "time_point_sec"),
                ("ref_block_num", "uint16"),
                ("ref_block_prefix", "uint32"),
                ("max_net_usage_words", "varuint32"),
                ("max_cpu_usage_ms", "uint8"),
                ("delay_sec", "varuint32"),
            ],
        ),
        _struct(
            "transaction",
            [
                ("context_free_actions", "action[]"),
                ("actions", "action[]"),
                ("transaction_extensions", "extension[]"),
            ],
            base="transaction_header",
        ),
    ],
}

ABI_DEFINITION_ABI: Dict[str, Any] = {
    "version": "eosio::abi/1.1",
    "structs": [
        _struct("type_def", [("new_type_name", "string"), ("type", "string")]),
        _struct("field_def", [("name", "string"), ("type", "string")]),
        _struct(
            "struct_def", [("name", "string"), ("base", "string"), ("fields", "field_def[]")]
        ),
        _struct(
            "action_def", [("name", "name"), ("type", "string"), ("ricardian_contract", "string")]
        ),
        _struct(
            "table_def",
            [
                ("name", "name"),
                ("index_type", "string"),
                ("key_names", "string[]"),
                ("key_types", "string[]"),
                ("type", "string"),
            ],
        ),
        _struct("clause_pair", [("id", "string"), ("body", "string")]),
        _struct("error_message", [("error_code", "uint64"), ("error_msg", "string")]),
        _struct("extension", [("type", "uint16"), ("data", "bytes")]),
        _struct("variant_def", [("name", "string"), ("types", "string[]")]),
        _struct(
            "abi_def",
            [
                ("version", "string"),
                ("types", "type_def[]"),
                ("structs", "struct_def[]"),
                ("actions", "action_def[]"),
                ("tables", "table_def[]"),
                ("ricardian_clauses", "clause_pair[]"),
                ("error_messages", "error_message[]"),
                ("abi_extensions", "extension[]"),
                ("variants", "variant_def[]$"),
            ],
        ),
    ],
}

ENVELOPE = AbiSchema("", TRANSACTION_ABI)
_ABI_CODEC = AbiSchema("", ABI_DEFINITION_ABI)


def pack_abi(abi: Dict[str, Any]) -> bytes:
    """Serialize a JSON ABI into the binary form ``setabi`` expects."""
    normalised = {
        "version": abi.get("version") or "eosio::abi/1.1",
        "types": list(abi.get("types") or []),
        "structs": [
            {
                "name": item["name"],
                "base": item.get("base") or "",
                "fields": [
                    {"name": field["name"], "type": field["type"]} for field in item.get("fields") or []
                ],
            }
            for item in abi.get("structs") or []
        ],
        "actions": [
            {
                "name": item["name"],
                "type": item["type"],
                "ricardian_contract": item.get("ricardian_contract") or "",
            }
            for item in abi.get("actions") or []
        ],
        "tables": [
            {
                "name": item["name"],
                "index_type": item.get("index_type") or "i64",
                "key_names": list(item.get("key_names") or []),
                "key_types": list(item.get("key_types") or []),
                "type": item["type"],
            }
            for item in abi.get("tables") or []
        ],
        "ricardian_clauses": list(abi.get("ricardian_clauses") or []),
        "error_messages": list(abi.get("error_messages") or []),
        "abi_extensions": list(abi.get("abi_extensions") or []),
        "variants": list(abi.get("variants") or []),
    }
    return _ABI_CODEC.encode("abi_def", normalised, path="abi")


def unpack_abi(raw: bytes) -> Dict[str, Any]:
    return _ABI_CODEC.decode("abi_def", raw)
