"""
Skill Router - Engine Package

Process-level plumbing shared by the router, the CLI and the API:

  - engine.config_loader: layered YAML + env config (ConfigLoader)
  - engine.logging: JSON log formatter and per-instance StructuredLogger
  - engine.resources: guidance payload locators (files, HTTP, in-memory)

Import from the submodules directly; this package re-exports nothing
so that importing one piece never drags in the others.
"""
