"""Recipe Orchestrator - polite, resilient multi-source recipe aggregation.

Coordinates per-domain adaptive rate limiting, a persistent block registry
and cross-source deduplication in front of thin recipe source adapters.
"""

__version__ = "0.1.0"

# Lazy imports to avoid circular dependencies
def __getattr__(name: str):
    if name == "Orchestrator":
        from recipe_orchestrator.orchestrator import Orchestrator
        return Orchestrator
    if name == "build_orchestrator":
        from recipe_orchestrator.orchestrator import build_orchestrator
        return build_orchestrator
    if name == "OrchestratorSettings":
        from recipe_orchestrator.config import OrchestratorSettings
        return OrchestratorSettings
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
