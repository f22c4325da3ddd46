"""BuildRun reconciliation, event predicates, env merging, git URL checks and build metrics."""

__version__ = "0.1.0"
__all__ = ["env", "git", "metrics", "objects", "predicates", "reconciler"]