"""
Codec registry for the game protocol.

Loads the message-schema catalogue (protobufjs JSON descriptor format) into a
protobuf descriptor pool and exposes encode/decode by fully-qualified message
type name.
"""

import json
import os
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Set, Tuple, Union

from google.protobuf import descriptor_pb2, descriptor_pool, json_format, message_factory
from google.protobuf.message import DecodeError, EncodeError, Message

from utils.constants import SCHEMA_FILE


# ========== Custom Exceptions ==========

class CodecRegistryError(Exception):
    """Base class for codec-layer failures."""
    pass


class SchemaError(CodecRegistryError):
    """Raised when the schema catalogue is malformed or references undefined types."""
    pass


class UnknownTypeError(CodecRegistryError):
    """Raised when a message type name is not registered."""
    pass


class CodecError(CodecRegistryError):
    """Raised when a value or a byte string does not fit a message type."""
    pass


# ========== Descriptor Construction ==========

_FDP = descriptor_pb2.FieldDescriptorProto

SCALAR_TYPES = {
    "double": _FDP.TYPE_DOUBLE,
    "float": _FDP.TYPE_FLOAT,
    "int32": _FDP.TYPE_INT32,
    "int64": _FDP.TYPE_INT64,
    "uint32": _FDP.TYPE_UINT32,
    "uint64": _FDP.TYPE_UINT64,
    "sint32": _FDP.TYPE_SINT32,
    "sint64": _FDP.TYPE_SINT64,
    "fixed32": _FDP.TYPE_FIXED32,
    "fixed64": _FDP.TYPE_FIXED64,
    "sfixed32": _FDP.TYPE_SFIXED32,
    "sfixed64": _FDP.TYPE_SFIXED64,
    "bool": _FDP.TYPE_BOOL,
    "string": _FDP.TYPE_STRING,
    "bytes": _FDP.TYPE_BYTES,
}

# Map keys may be any integral or string scalar
MAP_KEY_TYPES = {
    name for name in SCALAR_TYPES if name not in ("double", "float", "bytes")
}

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

_MESSAGE = "message"
_ENUM = "enum"


@dataclass
class VerifyResult:
    """Outcome of the default-value round trip for one message type"""
    type_name: str
    passed: bool
    detail: str = ""


@dataclass
class DescribeResult:
    """A byte blob decoded against the first structurally matching type"""
    type_name: str
    message: Message


def _map_entry_name(field_name: str) -> str:
    return "".join(part[:1].upper() + part[1:] for part in field_name.split("_")) + "Entry"


class CodecRegistry:
    """Registry mapping message type names to protobuf message classes.

    Every message type from the catalogue becomes a real generated class, so
    decoded values are strongly-typed messages with attribute access.
    """

    def __init__(self):
        self._pool = descriptor_pool.DescriptorPool()
        self._types: Dict[str, Any] = {}  # full name -> message class, in registration order
        self._kinds: Dict[str, str] = {}  # full name -> "message" | "enum"
        self._files: Dict[str, str] = {}  # full name -> file that defines it
        self._generation = 0

    # ---- Registration ----

    def register(self, schema_source: Union[str, os.PathLike, Dict[str, Any]]):
        """Load every definition from a schema source.

        Args:
            schema_source: catalogue dict, JSON text, or path to a JSON file

        Raises:
            SchemaError: malformed definition, undefined type reference,
                duplicate type, or cyclic package dependencies
        """
        catalogue = self._load_source(schema_source)
        nested = catalogue.get("nested")
        if not isinstance(nested, dict):
            raise SchemaError("schema has no top-level 'nested' definitions")

        self._generation += 1

        # First pass: collect every type name so references can be resolved
        top_level: List[Tuple[str, str, str, Dict[str, Any]]] = []
        new_kinds: Dict[str, str] = {}
        packages: Dict[str, str] = {}
        self._collect(nested, (), (), top_level, new_kinds, packages)

        known = dict(self._kinds)
        for name, kind in new_kinds.items():
            if name in known:
                raise SchemaError(f"type {name} is already registered")
            known[name] = kind

        # Second pass: one file per package
        files: Dict[str, descriptor_pb2.FileDescriptorProto] = {}
        file_deps: Dict[str, Set[str]] = {}
        file_of: Dict[str, str] = dict(self._files)
        for name, package in packages.items():
            file_of[name] = f"{package or 'root'}.g{self._generation}.proto"

        for kind, package, name, body in top_level:
            file_name = f"{package or 'root'}.g{self._generation}.proto"
            file_proto = files.get(file_name)
            if file_proto is None:
                file_proto = descriptor_pb2.FileDescriptorProto(
                    name=file_name, package=package, syntax="proto3"
                )
                files[file_name] = file_proto
                file_deps[file_name] = set()

            full_name = f"{package}.{name}" if package else name
            if kind == _ENUM:
                self._build_enum(file_proto.enum_type.add(), name, body, full_name)
            else:
                self._build_message(
                    file_proto.message_type.add(), name, body, full_name,
                    known, file_of, file_deps[file_name], file_name,
                )

        for file_name in self._dependency_order(file_deps):
            file_proto = files[file_name]
            file_proto.dependency.extend(sorted(file_deps[file_name]))
            try:
                self._pool.AddSerializedFile(file_proto.SerializeToString())
            except (TypeError, ValueError, KeyError) as e:
                raise SchemaError(f"{file_proto.package or 'root'}: {e}") from e

        for name, kind in new_kinds.items():
            self._kinds[name] = kind
            self._files[name] = file_of[name]
            if kind == _MESSAGE:
                descriptor = self._pool.FindMessageTypeByName(name)
                self._types[name] = message_factory.GetMessageClass(descriptor)

    @staticmethod
    def _load_source(schema_source) -> Dict[str, Any]:
        if isinstance(schema_source, dict):
            return schema_source

        try:
            if isinstance(schema_source, str) and schema_source.lstrip().startswith("{"):
                catalogue = json.loads(schema_source)
            else:
                with open(schema_source, "r", encoding="utf-8") as f:
                    catalogue = json.load(f)
        except json.JSONDecodeError as e:
            raise SchemaError(f"schema is not valid JSON: {e}") from e
        except OSError as e:
            raise SchemaError(f"cannot read schema: {e}") from e

        if not isinstance(catalogue, dict):
            raise SchemaError("schema root must be an object")
        return catalogue

    def _collect(self, nested, package, message_path, top_level, kinds, packages):
        """Walk namespaces and messages, recording every type's full name and package."""
        for name, node in nested.items():
            if not _IDENTIFIER.match(str(name)):
                raise SchemaError(f"invalid definition name {name!r}")
            if not isinstance(node, dict):
                raise SchemaError(f"definition {name!r} must be an object")

            path = message_path + (name,)
            full_name = ".".join(package + path)

            if "fields" in node:
                kinds[full_name] = _MESSAGE
                packages[full_name] = ".".join(package)
                if not message_path:
                    top_level.append((_MESSAGE, ".".join(package), name, node))
                inner = node.get("nested")
                if inner is not None:
                    if not isinstance(inner, dict):
                        raise SchemaError(f"{full_name}: 'nested' must be an object")
                    self._collect(inner, package, path, top_level, kinds, packages)
            elif "values" in node:
                kinds[full_name] = _ENUM
                packages[full_name] = ".".join(package)
                if not message_path:
                    top_level.append((_ENUM, ".".join(package), name, node))
            elif "nested" in node and not message_path:
                if not isinstance(node["nested"], dict):
                    raise SchemaError(f"{full_name}: 'nested' must be an object")
                self._collect(node["nested"], package + (name,), (), top_level, kinds, packages)
            else:
                raise SchemaError(f"{full_name}: not a message, enum or namespace")

    @staticmethod
    def _resolve(ref: str, scope: str, known: Dict[str, str]) -> str:
        """Resolve a type reference the protobuf way, innermost scope first."""
        if ref.startswith("."):
            if ref[1:] in known:
                return ref[1:]
        else:
            parts = scope.split(".") if scope else []
            while True:
                candidate = ".".join(parts + [ref])
                if candidate in known:
                    return candidate
                if not parts:
                    break
                parts.pop()
        raise SchemaError(f"{scope}: undefined type {ref!r}")

    def _build_enum(self, enum_proto, name, body, full_name):
        values = body.get("values")
        if not isinstance(values, dict) or not values:
            raise SchemaError(f"{full_name}: enum needs at least one value")
        enum_proto.name = name
        for value_name, number in values.items():
            if not _IDENTIFIER.match(str(value_name)):
                raise SchemaError(f"{full_name}: invalid enum value name {value_name!r}")
            if not isinstance(number, int) or isinstance(number, bool):
                raise SchemaError(f"{full_name}.{value_name}: enum value must be an integer")
            enum_proto.value.add(name=value_name, number=number)
        if next(iter(values.values())) != 0:
            raise SchemaError(f"{full_name}: first enum value must be zero")

    def _build_message(self, msg_proto, name, body, full_name, known, file_of, deps, file_name):
        fields = body.get("fields")
        if not isinstance(fields, dict):
            raise SchemaError(f"{full_name}: 'fields' must be an object")

        msg_proto.name = name
        used_numbers: Set[int] = set()
        for field_name, spec in fields.items():
            if not _IDENTIFIER.match(str(field_name)):
                raise SchemaError(f"{full_name}: invalid field name {field_name!r}")
            if not isinstance(spec, dict):
                raise SchemaError(f"{full_name}.{field_name}: field must be an object")

            number = spec.get("id")
            if not isinstance(number, int) or isinstance(number, bool) or number <= 0:
                raise SchemaError(f"{full_name}.{field_name}: missing or invalid field id")
            if 19000 <= number <= 19999 or number > 536870911:
                raise SchemaError(f"{full_name}.{field_name}: field id {number} is reserved")
            if number in used_numbers:
                raise SchemaError(f"{full_name}.{field_name}: duplicate field id {number}")
            used_numbers.add(number)

            type_ref = spec.get("type")
            if not isinstance(type_ref, str) or not type_ref:
                raise SchemaError(f"{full_name}.{field_name}: missing field type")

            rule = spec.get("rule")
            if rule not in (None, "optional", "repeated"):
                raise SchemaError(f"{full_name}.{field_name}: unsupported rule {rule!r}")

            field = msg_proto.field.add(name=field_name, number=number)

            key_type = spec.get("keyType")
            if key_type is not None:
                if key_type not in MAP_KEY_TYPES:
                    raise SchemaError(f"{full_name}.{field_name}: invalid map key type {key_type!r}")
                entry = msg_proto.nested_type.add(name=_map_entry_name(field_name))
                entry.options.map_entry = True
                entry.field.add(
                    name="key", number=1, label=_FDP.LABEL_OPTIONAL, type=SCALAR_TYPES[key_type]
                )
                value = entry.field.add(name="value", number=2, label=_FDP.LABEL_OPTIONAL)
                self._set_field_type(value, type_ref, full_name, known, file_of, deps, file_name)
                field.label = _FDP.LABEL_REPEATED
                field.type = _FDP.TYPE_MESSAGE
                field.type_name = f".{full_name}.{entry.name}"
                continue

            field.label = _FDP.LABEL_REPEATED if rule == "repeated" else _FDP.LABEL_OPTIONAL
            self._set_field_type(field, type_ref, full_name, known, file_of, deps, file_name)

        inner = body.get("nested") or {}
        for inner_name, inner_body in inner.items():
            inner_full = f"{full_name}.{inner_name}"
            if "fields" in inner_body:
                self._build_message(
                    msg_proto.nested_type.add(), inner_name, inner_body, inner_full,
                    known, file_of, deps, file_name,
                )
            else:
                self._build_enum(msg_proto.enum_type.add(), inner_name, inner_body, inner_full)

    def _set_field_type(self, field, type_ref, scope, known, file_of, deps, file_name):
        scalar = SCALAR_TYPES.get(type_ref)
        if scalar is not None:
            field.type = scalar
            return

        resolved = self._resolve(type_ref, scope, known)
        field.type = _FDP.TYPE_MESSAGE if known[resolved] == _MESSAGE else _FDP.TYPE_ENUM
        field.type_name = "." + resolved
        target_file = file_of[resolved]
        if target_file != file_name:
            deps.add(target_file)

    @staticmethod
    def _dependency_order(file_deps: Dict[str, Set[str]]) -> List[str]:
        """Order new files so each one follows the files it imports."""
        ordered: List[str] = []
        pending = {name: {d for d in deps if d in file_deps} for name, deps in file_deps.items()}
        while pending:
            ready = sorted(name for name, deps in pending.items() if not deps)
            if not ready:
                raise SchemaError(
                    "cyclic dependency between packages: " + ", ".join(sorted(pending))
                )
            for name in ready:
                ordered.append(name)
                del pending[name]
            for deps in pending.values():
                deps.difference_update(ready)
        return ordered

    # ---- Lookup ----

    def has_type(self, type_name: str) -> bool:
        return type_name in self._types

    def type_names(self) -> List[str]:
        return list(self._types)

    def message_class(self, type_name: str):
        cls = self._types.get(type_name)
        if cls is None:
            raise UnknownTypeError(f"unknown message type: {type_name}")
        return cls

    # ---- Encode / Decode ----

    def encode(self, type_name: str, value: Any = None) -> bytes:
        """Serialize a dict (or a message of that type) as type_name."""
        cls = self.message_class(type_name)
        message = self._build(cls, type_name, value)
        try:
            return message.SerializeToString()
        except EncodeError as e:
            raise CodecError(f"{type_name}: {e}") from e

    def decode(self, type_name: str, data: bytes) -> Message:
        """Parse bytes as type_name and return the message instance."""
        cls = self.message_class(type_name)
        if not isinstance(data, (bytes, bytearray, memoryview)):
            raise CodecError(f"{type_name}: expected bytes, got {type(data).__name__}")
        message = cls()
        try:
            message.ParseFromString(bytes(data))
        except DecodeError as e:
            raise CodecError(f"{type_name}: {e}") from e
        return message

    @staticmethod
    def _build(cls, type_name: str, value: Any) -> Message:
        if value is None:
            return cls()
        if isinstance(value, Message):
            if value.DESCRIPTOR.full_name != type_name:
                raise CodecError(
                    f"{type_name}: got a {value.DESCRIPTOR.full_name} message instead"
                )
            return value
        if isinstance(value, dict):
            try:
                return cls(**value)
            except (TypeError, ValueError, AttributeError) as e:
                raise CodecError(f"{type_name}: {e}") from e
        raise CodecError(f"{type_name}: cannot encode a {type(value).__name__}")

    # ---- Tooling ----

    def verify(self) -> List[VerifyResult]:
        """Round-trip the default value of every registered message type."""
        results = []
        for type_name, cls in self._types.items():
            try:
                decoded = self.decode(type_name, b"")
                encoded = self.encode(type_name, decoded)
                restored = self.decode(type_name, encoded)
                if restored == cls() and encoded == b"":
                    results.append(VerifyResult(type_name, True))
                else:
                    results.append(VerifyResult(type_name, False, "default value changed in round trip"))
            except CodecRegistryError as e:
                results.append(VerifyResult(type_name, False, str(e)))
        return results

    def describe(self, data: bytes, candidate_type: Optional[str] = None) -> DescribeResult:
        """Decode a blob against one type, or find the first registered type that fits it."""
        if candidate_type:
            return DescribeResult(candidate_type, self.decode(candidate_type, data))

        for type_name in self._types:
            try:
                message = self.decode(type_name, data)
            except CodecError:
                continue
            if self._is_structural_match(message, data):
                return DescribeResult(type_name, message)

        raise CodecError(f"no registered type matches {len(data)} bytes")

    @staticmethod
    def _is_structural_match(message: Message, data: bytes) -> bool:
        # A match must use known fields for every byte of the input
        probe = message.__class__()
        probe.CopyFrom(message)
        probe.DiscardUnknownFields()
        if not data:
            return True
        if not probe.ListFields():
            return False
        return len(probe.SerializeToString()) == len(data)

    @staticmethod
    def to_dict(message: Message) -> Dict[str, Any]:
        return json_format.MessageToDict(message, preserving_proto_field_name=True)


def load_registry(path: str = SCHEMA_FILE, verify: bool = True) -> CodecRegistry:
    """Load the protocol catalogue, optionally verifying every type.

    Raises:
        SchemaError: the catalogue cannot be loaded or a type fails verification
    """
    registry = CodecRegistry()
    registry.register(path)
    if verify:
        failed = [r for r in registry.verify() if not r.passed]
        if failed:
            details = "; ".join(f"{r.type_name}: {r.detail}" for r in failed)
            raise SchemaError(f"catalogue failed verification: {details}")
    return registry
