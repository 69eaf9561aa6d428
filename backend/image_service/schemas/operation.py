"""Transform operation schemas.

An operation is one of a closed set of variants, discriminated on ``type``:

    {"type": "resize",  "params": {"width": 100, "height": 100, "fit": "cover"}}
    {"type": "crop",    "params": {"x": 0, "y": 0, "width": 50, "height": 50}}
    {"type": "convert", "params": {"format": "webp"}}
    {"type": "quality", "params": {"quality": 60}}

Adding a variant means adding it to ``Operation`` and to the pipeline's
dispatch in ``services/pipeline.py``.
"""
import logging
from typing import Annotated, Any, Literal, Optional, Union

import pydantic
from pydantic import Field, TypeAdapter

from image_service.schemas.base import CamelModel
from image_service.services.errors import ValidationError

logger = logging.getLogger(__name__)

FitMode = Literal["cover", "contain", "fill", "inside", "outside"]
OutputFormat = Literal["jpeg", "png", "webp"]


class ResizeParams(CamelModel):
    width: Optional[int] = Field(default=None, gt=0)
    height: Optional[int] = Field(default=None, gt=0)
    fit: FitMode = "cover"


class CropParams(CamelModel):
    x: float
    y: float
    width: float = Field(gt=0)
    height: float = Field(gt=0)


class ConvertParams(CamelModel):
    format: OutputFormat


class QualityParams(CamelModel):
    quality: int = Field(ge=0, le=100)


class ResizeOperation(CamelModel):
    type: Literal["resize"] = "resize"
    params: ResizeParams = Field(default_factory=ResizeParams)


class CropOperation(CamelModel):
    type: Literal["crop"] = "crop"
    params: CropParams


class ConvertOperation(CamelModel):
    type: Literal["convert"] = "convert"
    params: ConvertParams


class QualityOperation(CamelModel):
    type: Literal["quality"] = "quality"
    params: QualityParams


Operation = Annotated[
    Union[ResizeOperation, CropOperation, ConvertOperation, QualityOperation],
    Field(discriminator="type"),
]

OPERATION_TYPES = frozenset({"resize", "crop", "convert", "quality"})

_operation_adapter = TypeAdapter(Operation)


def parse_operations(raw_operations: list[Any]) -> list[Operation]:
    """Turn request JSON into typed operations, preserving order.

    Entries with an unrecognised ``type`` are dropped with a warning so
    newer clients keep working against this server. A known type with
    invalid params is a caller error.
    """
    if not isinstance(raw_operations, list):
        raise ValidationError("operations must be a list")

    operations: list[Operation] = []
    for index, raw in enumerate(raw_operations):
        if not isinstance(raw, dict):
            raise ValidationError(f"operations[{index}] must be an object")
        op_type = raw.get("type")
        if op_type is not None and not isinstance(op_type, str):
            raise ValidationError(f"operations[{index}].type must be a string")
        if op_type not in OPERATION_TYPES:
            logger.warning(f"Ignoring unknown operation type at index {index}: {op_type!r}")
            continue
        try:
            operations.append(_operation_adapter.validate_python(raw))
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid {op_type} operation at index {index}: {e}") from e
    return operations
