"""Allows running the agent as a module: python -m esm"""

from esm.main import run

run()
