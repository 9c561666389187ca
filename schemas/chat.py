"""Schemas for the model catalog."""
from .base import CamelModel


class ModelInfo(CamelModel):
    id: str
    name: str
