"""Event-sourced orchestration of agent phases.

Every decision the engine takes is appended to a per-context log and the
current state of a task is always recomputed from that log. The executor
is the only writer for a context while it drives it; user answers and
cancellations arrive as further appends, so a task can stop at any pause
point and be resumed by another process later.
"""
