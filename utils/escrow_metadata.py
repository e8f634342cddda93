"""
Escrow payment metadata variants.

A payment's metadata is one of a closed set of versioned shapes, stored as a
JSON object carrying `version` and `escrow_type` discriminators.
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Union

from models import EscrowType
from utils.exception_handler import ValidationError

METADATA_VERSION = 1


@dataclass(frozen=True)
class FullEscrowMetadata:
    """Whole-task escrow; releasing it completes the task"""
    description: Optional[str] = None
    version: int = METADATA_VERSION
    escrow_type: str = EscrowType.FULL.value


@dataclass(frozen=True)
class MilestoneEscrowMetadata:
    """Escrow funding a single milestone; the milestone roll-up completes the task"""
    milestone_id: str
    version: int = METADATA_VERSION
    escrow_type: str = EscrowType.MILESTONE.value


EscrowMetadata = Union[FullEscrowMetadata, MilestoneEscrowMetadata]


def encode_metadata(metadata: Optional[EscrowMetadata]) -> Optional[Dict[str, Any]]:
    if metadata is None:
        return None
    if isinstance(metadata, MilestoneEscrowMetadata):
        return {
            "version": metadata.version,
            "escrow_type": metadata.escrow_type,
            "milestone_id": metadata.milestone_id,
        }
    return {
        "version": metadata.version,
        "escrow_type": metadata.escrow_type,
        "description": metadata.description,
    }


def decode_metadata(data: Optional[Dict[str, Any]]) -> Optional[EscrowMetadata]:
    """Rebuild a metadata variant, rejecting unknown versions or escrow types"""
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ValidationError(f"Payment metadata must be an object, got {type(data).__name__}")

    version = data.get("version")
    if version != METADATA_VERSION:
        raise ValidationError(f"Unsupported payment metadata version: {version!r}")

    escrow_type = data.get("escrow_type")
    if escrow_type == EscrowType.FULL.value:
        return FullEscrowMetadata(description=data.get("description"))
    if escrow_type == EscrowType.MILESTONE.value:
        milestone_id = data.get("milestone_id")
        if not milestone_id:
            raise ValidationError("Milestone payment metadata requires milestone_id")
        return MilestoneEscrowMetadata(milestone_id=milestone_id)

    raise ValidationError(f"Unknown escrow_type in payment metadata: {escrow_type!r}")


def is_milestone_payment(metadata: Optional[EscrowMetadata]) -> bool:
    return isinstance(metadata, MilestoneEscrowMetadata)
