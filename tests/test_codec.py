import json
import unittest

from google.protobuf.message import Message

from fakes import get_registry
from network.codec import (
    CodecError,
    CodecRegistry,
    SchemaError,
    UnknownTypeError,
    load_registry,
)


def minimal_schema(**extra_types):
    nested = {
        "demo": {
            "nested": {
                "Point": {"fields": {"x": {"type": "int32", "id": 1}, "y": {"type": "int32", "id": 2}}},
                "Shape": {
                    "fields": {
                        "name": {"type": "string", "id": 1},
                        "points": {"rule": "repeated", "type": "Point", "id": 2},
                        "kind": {"type": "Kind", "id": 3},
                        "tags": {"keyType": "string", "type": "int64", "id": 4},
                    }
                },
                "Kind": {"values": {"KIND_NONE": 0, "KIND_LINE": 1}},
            }
        }
    }
    nested["demo"]["nested"].update(extra_types)
    return {"nested": nested}


class TestCatalogue(unittest.TestCase):
    def test_every_registered_type_round_trips_its_default(self):
        results = get_registry().verify()
        self.assertTrue(results)
        failed = [r.type_name for r in results if not r.passed]
        self.assertEqual(failed, [])

    def test_catalogue_has_gate_and_game_types(self):
        registry = get_registry()
        for name in (
            "gatepb.Message",
            "gatepb.EventMessage",
            "gamepb.userpb.LoginRequest",
            "gamepb.plantpb.AllLandsReply",
            "gamepb.friendpb.AcceptFriendsRequest",
            "gamepb.taskpb.ClaimTaskRewardReply",
        ):
            self.assertTrue(registry.has_type(name), name)

    def test_load_registry_verifies(self):
        registry = load_registry()
        self.assertIn("gatepb.Message", registry.type_names())


class TestRegister(unittest.TestCase):
    def test_register_from_dict_and_json_text(self):
        from_dict = CodecRegistry()
        from_dict.register(minimal_schema())
        from_text = CodecRegistry()
        from_text.register(json.dumps(minimal_schema()))
        self.assertEqual(from_dict.type_names(), from_text.type_names())
        self.assertEqual(from_dict.type_names(), ["demo.Point", "demo.Shape"])

    def test_undefined_reference_is_schema_error(self):
        schema = minimal_schema(Broken={"fields": {"ghost": {"type": "Ghost", "id": 1}}})
        with self.assertRaises(SchemaError):
            CodecRegistry().register(schema)

    def test_missing_field_id_is_schema_error(self):
        schema = minimal_schema(Broken={"fields": {"a": {"type": "int32"}}})
        with self.assertRaises(SchemaError):
            CodecRegistry().register(schema)

    def test_duplicate_field_id_is_schema_error(self):
        schema = minimal_schema(Broken={"fields": {
            "a": {"type": "int32", "id": 1},
            "b": {"type": "string", "id": 1},
        }})
        with self.assertRaises(SchemaError):
            CodecRegistry().register(schema)

    def test_enum_without_zero_first_is_schema_error(self):
        schema = minimal_schema(BadEnum={"values": {"ONE": 1}})
        with self.assertRaises(SchemaError):
            CodecRegistry().register(schema)

    def test_invalid_json_is_schema_error(self):
        with self.assertRaises(SchemaError):
            CodecRegistry().register("{not json")

    def test_missing_file_is_schema_error(self):
        with self.assertRaises(SchemaError):
            CodecRegistry().register("/nonexistent/schema.json")

    def test_cyclic_packages_are_schema_error(self):
        schema = {"nested": {
            "alpha": {"nested": {"A": {"fields": {"b": {"type": "beta.B", "id": 1}}}}},
            "beta": {"nested": {"B": {"fields": {"a": {"type": "alpha.A", "id": 1}}}}},
        }}
        with self.assertRaises(SchemaError):
            CodecRegistry().register(schema)

    def test_cross_package_reference(self):
        schema = minimal_schema()
        schema["nested"]["other"] = {"nested": {
            "Wrapper": {"fields": {"shape": {"type": "demo.Shape", "id": 1}}},
        }}
        registry = CodecRegistry()
        registry.register(schema)
        data = registry.encode("other.Wrapper", {"shape": {"name": "tri"}})
        self.assertEqual(registry.decode("other.Wrapper", data).shape.name, "tri")


class TestEncodeDecode(unittest.TestCase):
    def setUp(self):
        self.registry = CodecRegistry()
        self.registry.register(minimal_schema())

    def test_encode_decode_nested_values(self):
        data = self.registry.encode("demo.Shape", {
            "name": "square",
            "points": [{"x": 1, "y": 2}, {"x": 3}],
            "kind": 1,
            "tags": {"a": 5},
        })
        shape = self.registry.decode("demo.Shape", data)
        self.assertIsInstance(shape, Message)
        self.assertEqual(shape.name, "square")
        self.assertEqual([(p.x, p.y) for p in shape.points], [(1, 2), (3, 0)])
        self.assertEqual(shape.kind, 1)
        self.assertEqual(dict(shape.tags), {"a": 5})

    def test_unknown_type(self):
        with self.assertRaises(UnknownTypeError):
            self.registry.encode("demo.Nope", {})
        with self.assertRaises(UnknownTypeError):
            self.registry.decode("demo.Nope", b"")

    def test_value_that_does_not_fit(self):
        with self.assertRaises(CodecError):
            self.registry.encode("demo.Point", {"z": 1})
        with self.assertRaises(CodecError):
            self.registry.encode("demo.Point", {"x": "not a number"})

    def test_garbage_bytes(self):
        with self.assertRaises(CodecError):
            self.registry.decode("demo.Shape", b"\x0a\xff\xff\xff")

    def test_encode_accepts_message_of_same_type_only(self):
        point = self.registry.decode("demo.Point", self.registry.encode("demo.Point", {"x": 4}))
        self.assertEqual(self.registry.encode("demo.Point", point), self.registry.encode("demo.Point", {"x": 4}))
        with self.assertRaises(CodecError):
            self.registry.encode("demo.Shape", point)


class TestDescribe(unittest.TestCase):
    def setUp(self):
        self.registry = CodecRegistry()
        self.registry.register(minimal_schema())

    def test_describe_with_candidate(self):
        data = self.registry.encode("demo.Point", {"x": 7})
        result = self.registry.describe(data, "demo.Point")
        self.assertEqual(result.type_name, "demo.Point")
        self.assertEqual(result.message.x, 7)

    def test_describe_finds_structural_match(self):
        data = self.registry.encode("demo.Shape", {"name": "line", "points": [{"x": 1}]})
        result = self.registry.describe(data)
        self.assertEqual(result.type_name, "demo.Shape")
        self.assertEqual(result.message.name, "line")

    def test_describe_nothing_matches(self):
        with self.assertRaises(CodecError):
            self.registry.describe(b"\xff\xff\xff")


if __name__ == "__main__":
    unittest.main()
