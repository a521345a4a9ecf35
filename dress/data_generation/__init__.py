"""Synthetic subject generation."""

from .generate_subjects import SubjectGenerator, save_subjects

__all__ = ['SubjectGenerator', 'save_subjects']
