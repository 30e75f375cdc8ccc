"""
Base schemas with standardized field types for consistent API responses.
"""
from datetime import time
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic_core import core_schema


class StandardizedModel(BaseModel):
    """Base model for responses."""

    model_config = ConfigDict(use_enum_values=True, populate_by_name=True, from_attributes=True)


class StrictModel(BaseModel):
    """Request bodies: unknown fields are rejected."""

    model_config = ConfigDict(extra="forbid", validate_default=True, populate_by_name=True)


class Money(Decimal):
    """Money field that serializes as a two-decimal string"""

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type: Any, handler: Any) -> core_schema.CoreSchema:
        def validate_money(value: Any) -> Decimal:
            if isinstance(value, bool):
                raise ValueError("Cannot convert bool to Money")
            if isinstance(value, (int, float)):
                return Decimal(str(value)).quantize(Decimal("0.01"))
            if isinstance(value, str):
                return Decimal(value).quantize(Decimal("0.01"))
            if isinstance(value, Decimal):
                return value.quantize(Decimal("0.01"))
            raise ValueError(f"Cannot convert {type(value)} to Money")

        return core_schema.no_info_after_validator_function(
            validate_money,
            core_schema.union_schema(
                [
                    core_schema.int_schema(),
                    core_schema.float_schema(),
                    core_schema.str_schema(),
                    core_schema.is_instance_schema(Decimal),
                ]
            ),
            serialization=core_schema.plain_serializer_function_ser_schema(
                lambda value: f"{Decimal(value):.2f}",
                info_arg=False,
                return_schema=core_schema.str_schema(),
            ),
        )


class ClockTime(time):
    """Wall-clock time accepted and rendered as ``HH:MM``."""

    @classmethod
    def __get_pydantic_core_schema__(cls, source_type: Any, handler: Any) -> core_schema.CoreSchema:
        def validate_clock(value: Any) -> time:
            if isinstance(value, time):
                return value.replace(second=0, microsecond=0)
            if isinstance(value, str):
                parts = value.strip().split(":")
                if len(parts) != 2 or not all(p.isdigit() and len(p) == 2 for p in parts):
                    raise ValueError("Time must be formatted as HH:MM")
                return time(int(parts[0]), int(parts[1]))
            raise ValueError("Time must be formatted as HH:MM")

        return core_schema.no_info_after_validator_function(
            validate_clock,
            core_schema.union_schema(
                [
                    core_schema.str_schema(pattern=r"^\d{2}:\d{2}$"),
                    core_schema.is_instance_schema(time),
                ]
            ),
            serialization=core_schema.plain_serializer_function_ser_schema(
                lambda value: value.strftime("%H:%M"),
                info_arg=False,
                return_schema=core_schema.str_schema(),
            ),
        )
