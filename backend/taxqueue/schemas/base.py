"""Base schema classes with camelCase alias generation.

Python code stays snake_case; request and response JSON is camelCase.
"""
from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Request bodies. Accepts camelCase (or snake_case) keys."""
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "protected_namespaces": (),
        "extra": "ignore",
    }


class CamelORMModel(BaseModel):
    """Responses read straight off ORM rows."""
    model_config = {
        "alias_generator": to_camel,
        "populate_by_name": True,
        "from_attributes": True,
        "protected_namespaces": (),
    }
