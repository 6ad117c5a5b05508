"""
End-to-end encryption bootstrap for a Matrix bot account.

Modules:
- orchestrator: setup() / resume() / logout() entry points
- reconciler: adopt or create the server-side key backup
- recovery_key: recovery key codec and write-once key file
- config: setup inputs, store key lookup, environment settings
- interaction: terminal prompts for setup()
- errors: error hierarchy shared by all modules
"""

__all__ = [
    "config",
    "errors",
    "interaction",
    "orchestrator",
    "ports",
    "reconciler",
    "recovery_key",
]
