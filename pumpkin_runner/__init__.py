# pumpkin_runner/__init__.py

"""
Pumpkin plugin runner.

CLI entrypoint: cargo pumpkin [init|run|clean]  (or python -m pumpkin_runner)

This package is the glue that:
- Finds the plugin crate the user is working in
- Keeps a cached Pumpkin server build under .run/
- Builds the plugin with cargo and drops it into .run/plugins/
- Launches the server, relays Ctrl+C, and hands back its exit code
"""

__version__ = "0.3.0"
