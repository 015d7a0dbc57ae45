from shellbox.runner import BatchSession, restart_sandbox, run_commands

__all__ = ["BatchSession", "restart_sandbox", "run_commands"]
