from registry.phases import (
    CATCH_ALL,
    DEFAULT_REGISTRY_PATH,
    ExitCriterion,
    Phase,
    SkillRegistry,
    load_registry,
)

__all__ = [
    "CATCH_ALL",
    "DEFAULT_REGISTRY_PATH",
    "ExitCriterion",
    "Phase",
    "SkillRegistry",
    "load_registry",
]
