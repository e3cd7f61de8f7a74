"""
Virtual try-on orchestration engine.
"""
from .config import load_config
from .pipeline.orchestrator import TryOnOrchestrator

__all__ = ["load_config", "TryOnOrchestrator"]
