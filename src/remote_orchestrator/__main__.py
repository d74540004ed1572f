"""Allow running as ``python -m remote_orchestrator``."""

from remote_orchestrator.cli import main

main()
