"""
This module turns raw ledger log entries into `DecodedEvent` records.

Two shapes of entry are accepted: entries the source already decoded (an event
name plus named or positional args) and bare topic/data pairs, which are
decoded against the contract ABI with eth_abi. Integer values are always
rendered as decimal strings so vote weights never pass through a float.

Decoding never fails a sync pass. An entry that cannot be matched against the
ABI becomes an `UnknownEvent`; its topics and data are still stored in the raw
event ledger and can be re-decoded later with an updated ABI.
"""
from typing import Any, Dict, List, Sequence
import json
import logging

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import keccak

from .models import DecodedEvent, EventKind, RawLogEntry

POSITIONAL_KEY = "__positional"

DEFAULT_BALLOT_ABI: List[Dict[str, Any]] = [
    {
        "type": "event",
        "name": "StageChanged",
        "anonymous": False,
        "inputs": [{"name": "newStage", "type": "uint8", "indexed": False}],
    },
    {
        "type": "event",
        "name": "VoterRegistered",
        "anonymous": False,
        "inputs": [
            {"name": "voter", "type": "address", "indexed": True},
            {"name": "weight", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "VoteCast",
        "anonymous": False,
        "inputs": [
            {"name": "voter", "type": "address", "indexed": True},
            {"name": "proposalId", "type": "uint256", "indexed": False},
            {"name": "weight", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "Finalized",
        "anonymous": False,
        "inputs": [
            {"name": "winningProposalId", "type": "uint256", "indexed": False},
            {"name": "winningVoteCount", "type": "uint256", "indexed": False},
            {"name": "timestamp", "type": "uint256", "indexed": False},
        ],
    },
]


def normalize_value(value: Any) -> Any:
    """Makes a decoded value JSON-safe without losing integer precision."""
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return str(int(value)) if value.is_integer() else repr(value)
    if isinstance(value, (bytes, bytearray)):
        return "0x" + bytes(value).hex()
    if isinstance(value, (list, tuple)):
        return [normalize_value(v) for v in value]
    if isinstance(value, dict):
        return {str(k): normalize_value(v) for k, v in value.items()}
    return value


def _hex_to_bytes(value: str) -> bytes:
    digits = value[2:] if value[:2].lower() == "0x" else value
    return bytes.fromhex(digits)


def _is_dynamic(abi_type: str) -> bool:
    # Indexed dynamic values are stored as their keccak hash, not the value.
    return abi_type in ("string", "bytes") or abi_type.endswith("]") or abi_type.startswith("(")


def _unknown() -> DecodedEvent:
    return DecodedEvent(kind=EventKind.UNKNOWN, name=EventKind.UNKNOWN.value, args={})


class EventSchema:
    """One event entry of the ABI, with its topic0 precomputed."""

    def __init__(self, abi_entry: Dict[str, Any]):
        self.name: str = abi_entry["name"]
        self.inputs: List[Dict[str, Any]] = list(abi_entry.get("inputs", []))
        types = ",".join(i["type"] for i in self.inputs)
        self.signature = f"{self.name}({types})"
        self.topic = "0x" + keccak(text=self.signature).hex()

    def input_names(self) -> List[str]:
        return [i.get("name") or str(pos) for pos, i in enumerate(self.inputs)]

    def decode(self, topics: Sequence[str], data: bytes) -> Dict[str, Any]:
        """Decodes indexed values from `topics` (topic0 excluded) and the rest from `data`."""
        indexed = [i for i in self.inputs if i.get("indexed")]
        plain = [i for i in self.inputs if not i.get("indexed")]
        if len(topics) != len(indexed):
            raise ValueError(f"{self.name} expects {len(indexed)} indexed topics, got {len(topics)}")

        plain_values = iter(abi_decode([i["type"] for i in plain], data) if plain else ())
        topic_values = iter(topics)

        args: Dict[str, Any] = {}
        positional: List[Any] = []
        for name, param in zip(self.input_names(), self.inputs):
            if param.get("indexed"):
                topic = next(topic_values)
                if _is_dynamic(param["type"]):
                    value = topic.lower()
                else:
                    value = abi_decode([param["type"]], _hex_to_bytes(topic))[0]
            else:
                value = next(plain_values)
            if param["type"] == "address" and isinstance(value, str):
                value = value.lower()
            value = normalize_value(value)
            args[name] = value
            positional.append(value)
        args[POSITIONAL_KEY] = positional
        return args


class EventDecoder:
    """
    Decodes log entries against a contract ABI. The built-in Ballot ABI is
    used unless another one is given.
    """

    def __init__(self, abi: List[Dict[str, Any]] | None = None):
        abi = DEFAULT_BALLOT_ABI if abi is None else abi
        self._by_topic: Dict[str, EventSchema] = {}
        self._by_name: Dict[str, EventSchema] = {}
        for entry in abi:
            if entry.get("type") != "event" or entry.get("anonymous"):
                continue
            schema = EventSchema(entry)
            self._by_topic[schema.topic] = schema
            self._by_name[schema.name] = schema

    @classmethod
    def from_file(cls, path: str) -> "EventDecoder":
        """Loads an ABI from a raw ABI array or a Hardhat artifact with an `abi` field."""
        with open(path, "r", encoding="utf-8") as f:
            abi_json = json.load(f)
        if isinstance(abi_json, dict) and isinstance(abi_json.get("abi"), list):
            abi_json = abi_json["abi"]
        if not isinstance(abi_json, list):
            raise ValueError(f"{path} does not contain an ABI array")
        return cls(abi_json)

    def topic_for(self, event_name: str) -> str:
        return self._by_name[event_name].topic

    def decode(self, entry: RawLogEntry) -> DecodedEvent:
        if entry.event_name:
            return self._decode_named(entry)
        return self._decode_topics(entry)

    def _decode_named(self, entry: RawLogEntry) -> DecodedEvent:
        args: Dict[str, Any] = {}
        positional: List[Any] = []
        if isinstance(entry.args, list):
            positional = [normalize_value(v) for v in entry.args]
        elif isinstance(entry.args, dict):
            for key, value in entry.args.items():
                key = str(key)
                if key == POSITIONAL_KEY and isinstance(value, list):
                    positional = [normalize_value(v) for v in value]
                elif key.isdigit():
                    index = int(key)
                    positional.extend([None] * (index + 1 - len(positional)))
                    positional[index] = normalize_value(value)
                else:
                    args[key] = normalize_value(value)

        schema = self._by_name.get(entry.event_name)
        if schema is not None:
            for pos, name in enumerate(schema.input_names()):
                if name not in args and pos < len(positional) and positional[pos] is not None:
                    args[name] = positional[pos]
        if positional:
            args[POSITIONAL_KEY] = positional
        return DecodedEvent(kind=EventKind.from_name(entry.event_name), name=entry.event_name, args=args)

    def _decode_topics(self, entry: RawLogEntry) -> DecodedEvent:
        if not entry.topics:
            return _unknown()
        schema = self._by_topic.get(entry.topics[0].lower())
        if schema is None:
            return _unknown()
        try:
            args = schema.decode(entry.topics[1:], _hex_to_bytes(entry.data))
        except (DecodingError, ValueError, TypeError) as e:
            logging.warning(
                f"Could not decode {schema.name} log {entry.transaction_hash}:{entry.log_index}: {e}"
            )
            return _unknown()
        return DecodedEvent(kind=EventKind.from_name(schema.name), name=schema.name, args=args)
