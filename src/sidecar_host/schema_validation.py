"""JSON Schema validation for wire frames

Each frame kind has a Draft-07 schema describing the fields the engine routes
on. Payload fields (work orders, event bodies, receipts) are only required to
be objects; their contents are never inspected.
"""

from typing import Any, Dict, List

from jsonschema import Draft7Validator

from sidecar_host.jsonl_frame import FrameType


_NULLABLE_STRING = {"type": ["string", "null"]}

FRAME_SCHEMAS: Dict[FrameType, Dict[str, Any]] = {
    FrameType.HELLO: {
        "type": "object",
        "required": ["t", "contract_version", "backend"],
        "properties": {
            "t": {"const": "hello"},
            "contract_version": {"type": "string"},
            "backend": {
                "type": "object",
                "required": ["id"],
                "properties": {
                    "id": {"type": "string"},
                    "backend_version": _NULLABLE_STRING,
                    "adapter_version": _NULLABLE_STRING,
                },
            },
            "capabilities": {"type": ["object", "null"]},
            "mode": _NULLABLE_STRING,
        },
    },
    FrameType.RUN: {
        "type": "object",
        "required": ["t", "id", "work_order"],
        "properties": {
            "t": {"const": "run"},
            "id": {"type": "string", "minLength": 1},
            "work_order": {"type": "object"},
        },
    },
    FrameType.EVENT: {
        "type": "object",
        "required": ["t", "ref_id", "event"],
        "properties": {
            "t": {"const": "event"},
            "ref_id": {"type": "string"},
            "event": {
                "type": "object",
                "required": ["ts", "type"],
                "properties": {
                    "ts": {"type": "string"},
                    "type": {"type": "string"},
                },
            },
        },
    },
    FrameType.FINAL: {
        "type": "object",
        "required": ["t", "ref_id", "receipt"],
        "properties": {
            "t": {"const": "final"},
            "ref_id": {"type": "string"},
            "receipt": {"type": "object"},
        },
    },
    FrameType.FATAL: {
        "type": "object",
        "required": ["t", "error"],
        "properties": {
            "t": {"const": "fatal"},
            "ref_id": _NULLABLE_STRING,
            "error": {"type": "string"},
        },
    },
}


class FrameShapeError(Exception):
    """A frame object does not match the schema for its kind"""

    def __init__(self, frame_type: FrameType, details: List[str]):
        super().__init__(f"invalid {frame_type.value} frame: {'; '.join(details)}")
        self.frame_type = frame_type
        self.details = details


class FrameValidator:
    """Schema validator holding one compiled validator per frame type"""

    def __init__(self):
        self.validators: Dict[FrameType, Draft7Validator] = {
            frame_type: Draft7Validator(schema)
            for frame_type, schema in FRAME_SCHEMAS.items()
        }

    def validator_for(self, frame_type: FrameType) -> Draft7Validator:
        return self.validators[frame_type]

    def validate(self, frame_type: FrameType, data: Dict[str, Any]) -> None:
        """Validate a JSON object against the schema for its frame type

        Raises:
            FrameShapeError: If the object does not match
        """
        errors = sorted(
            self.validator_for(frame_type).iter_errors(data),
            key=lambda e: [str(p) for p in e.absolute_path],
        )
        if errors:
            details = []
            for e in errors:
                where = ".".join(str(p) for p in e.absolute_path)
                details.append(f"{where}: {e.message}" if where else e.message)
            raise FrameShapeError(frame_type, details)


# Read-only after construction
default_validator = FrameValidator()
