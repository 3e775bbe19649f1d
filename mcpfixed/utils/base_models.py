# -*- coding: utf-8 -*-
"""Location: ./mcpfixed/utils/base_models.py
Copyright 2025
SPDX-License-Identifier: Apache-2.0
Authors: Mihai Criveti

Base pydantic model shared by the schema definitions.

Examples:
    >>> class Item(BaseModelWithConfigDict):
    ...     name: str
    >>> Item(name="  docs ").name
    'docs'
    >>> class Row:
    ...     name = "from-orm"
    >>> Item.model_validate(Row()).name
    'from-orm'
"""

# Third-Party
from pydantic import BaseModel, ConfigDict


class BaseModelWithConfigDict(BaseModel):
    """Base model reading ORM attributes and stripping surrounding whitespace."""

    model_config = ConfigDict(from_attributes=True, populate_by_name=True, str_strip_whitespace=True, use_enum_values=True)
