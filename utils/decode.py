"""
Offline protocol tooling.

Verifies the message catalogue and decodes captured blobs without touching
the network.

Usage:
    python -m utils.decode --verify
    python -m utils.decode 0a0c08... [--type gamepb.plantpb.AllLandsReply] [--gate]
"""

import argparse
import base64
import binascii
import json
import sys
from typing import Optional

from network.codec import CodecRegistry, CodecRegistryError, load_registry
from network.protocol import GATE_MESSAGE_TYPE, reply_type_name, request_type_name
from utils.constants import MESSAGE_TYPE_REQUEST, SCHEMA_FILE


def parse_blob(data: str) -> bytes:
    """Accept hex (spaces and a 0x prefix allowed) or base64."""
    text = data.strip()
    compact = "".join(text.split())
    if compact.lower().startswith("0x"):
        compact = compact[2:]
    try:
        return bytes.fromhex(compact)
    except ValueError:
        pass
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValueError("data is neither hex nor base64") from e


def verify_mode(path: str = SCHEMA_FILE) -> int:
    """Round-trip every registered type and print one line per type."""
    registry = load_registry(path, verify=False)
    results = registry.verify()
    failed = 0
    for result in results:
        status = "PASS" if result.passed else "FAIL"
        detail = f"  {result.detail}" if result.detail else ""
        print(f"[{status}] {result.type_name}{detail}")
        if not result.passed:
            failed += 1
    print(f"\n{len(results) - failed}/{len(results)} types passed")
    return 1 if failed else 0


def _print_message(type_name: str, message, registry: CodecRegistry):
    print(f"Type: {type_name}")
    print(json.dumps(registry.to_dict(message), indent=2, ensure_ascii=False))


def decode_mode(data: str, type_name: Optional[str] = None, gate: bool = False,
                path: str = SCHEMA_FILE) -> int:
    """
    Decode a blob against one type or every registered type.

    With gate=True the blob is a gatepb.Message frame; its body is decoded as
    the request or reply type named by the frame's service and method.
    """
    try:
        blob = parse_blob(data)
    except ValueError as e:
        print(f"Error: {e}")
        return 1

    registry = load_registry(path, verify=False)
    try:
        if gate:
            frame = registry.decode(GATE_MESSAGE_TYPE, blob)
            _print_message(GATE_MESSAGE_TYPE, frame.meta, registry)
            meta = frame.meta
            if meta.service_name and meta.method_name:
                if meta.message_type == MESSAGE_TYPE_REQUEST:
                    body_type = request_type_name(meta.service_name, meta.method_name)
                else:
                    body_type = reply_type_name(meta.service_name, meta.method_name)
                result = registry.describe(frame.body, body_type)
            else:
                result = registry.describe(frame.body)
        else:
            result = registry.describe(blob, type_name)
    except CodecRegistryError as e:
        print(f"Error: {e}")
        return 1

    _print_message(result.type_name, result.message, registry)
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description="Farm protocol decode/verify tool")
    parser.add_argument("data", nargs="?", help="Hex or base64 blob to decode")
    parser.add_argument("--type", dest="type_name", help="Message type to decode as")
    parser.add_argument("--gate", action="store_true", help="Data is a gatepb.Message frame")
    parser.add_argument("--verify", action="store_true", help="Verify every registered type")
    parser.add_argument("--schema", default=SCHEMA_FILE, help="Path to the message catalogue")
    args = parser.parse_args(argv)

    if args.verify:
        return verify_mode(args.schema)
    if not args.data:
        parser.error("data is required unless --verify is given")
    return decode_mode(args.data, args.type_name, gate=args.gate, path=args.schema)


if __name__ == "__main__":
    sys.exit(main())
