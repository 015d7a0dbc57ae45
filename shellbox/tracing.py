"""Stage timing for sandbox lifecycle operations.

StageTimer wraps the slow steps (image build, container boot, batch run) and
prints elapsed time after each. Always on, no config needed.
"""

import time


class StageTimer:
    """Prints elapsed wall-clock time after each named stage.

    Usage:
        t = StageTimer(console)
        sandbox.restart()
        t.mark("restart")      # prints "  restart  12.4s"
    """

    def __init__(self, console):
        self.console = console
        self._stage_start = time.time()

    def mark(self, label):
        elapsed = time.time() - self._stage_start
        self._stage_start = time.time()
        self.console.print(f"  [dim]{label}  {elapsed:.1f}s[/dim]")
        return elapsed
