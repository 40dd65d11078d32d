"""LEGEND: large-scale evidence generation across a network of databases."""

from .config import StudyConfig, load_study_config
from .main import execute

__all__ = ["StudyConfig", "execute", "load_study_config"]
