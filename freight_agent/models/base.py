"""Shared pydantic base class."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """
    Base model whose JSON form uses camelCase keys.

    Checkpoints, job payloads and model outputs all speak camelCase
    (`shipmentData`, `serviceLevel`, `invoiceId`); Python code uses the
    snake_case attribute names. Both spellings are accepted on input.
    """

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )
