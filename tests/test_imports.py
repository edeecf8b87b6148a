"""
Skill Router — Import Tests

Every module must import on its own in a fresh interpreter, whatever
order the rest of the suite happens to load things in.
"""

import os
import subprocess
import sys
import unittest

_base = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))

MODULES = [
    "router",
    "router.errors",
    "router.types",
    "router.classifier",
    "router.criteria",
    "router.budget",
    "router.store",
    "router.machine",
    "router.runtime",
    "router.cli",
    "registry",
    "registry.phases",
    "engine.logging",
    "engine.config_loader",
    "engine.resources",
    "api.models",
    "api.server",
]


class TestStandaloneImports(unittest.TestCase):

    def test_each_module_imports_alone(self):
        env = {**os.environ, "PYTHONPATH": _base}
        for module in MODULES:
            with self.subTest(module=module):
                proc = subprocess.run(
                    [sys.executable, "-c", f"import {module}"],
                    cwd=_base, env=env, capture_output=True, text=True, timeout=60,
                )
                self.assertEqual(proc.returncode, 0, proc.stderr)

    def test_docstring_entry_points(self):
        env = {**os.environ, "PYTHONPATH": _base}
        for stmt in (
            "from engine.resources import build_locator",
            "from registry.phases import load_registry; load_registry()",
        ):
            with self.subTest(stmt=stmt):
                proc = subprocess.run(
                    [sys.executable, "-c", stmt],
                    cwd=_base, env=env, capture_output=True, text=True, timeout=60,
                )
                self.assertEqual(proc.returncode, 0, proc.stderr)


if __name__ == "__main__":
    unittest.main()
