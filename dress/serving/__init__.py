"""Serving utilities: REST API and asynchronous job dispatch."""

from .dispatch import AsyncDispatcher, default_operations
from .api import app, PredictionResponse, SubjectRequest

__all__ = ['AsyncDispatcher', 'default_operations', 'app', 'PredictionResponse', 'SubjectRequest']
