"""Work-order execution loop and its continuation machinery.

Why not a generic agent framework?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The hard part here is not calling a model with tools. It is keeping one
logical task alive across many short physical invocations while bounding
cost:

- The host kills the process after a fixed wall-clock limit, so the loop
  checkpoints before that limit and a scheduler re-dispatches it
  (``TaskExecutor`` returns a resume token instead of calling itself).
- The conversation must stay well-formed after trimming, crashes mid-dispatch
  and provider switches: every tool invocation keeps its result in the next
  turn (``history.compact`` / ``history.repair``).
- Repeated continuations without new mutations are turned into a
  deterministic verdict: escalate to a stronger model tier, or fail and spawn
  one remediation task (``circuit_breaker`` / ``escalation``).

The same loop drives two completion protocols through ``providers`` and
records every state-changing tool call in ``task_mutations`` so progress is
measured from storage, not from the model's own claims.
"""
