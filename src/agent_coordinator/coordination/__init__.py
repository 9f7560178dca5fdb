"""Task coordination for worker processes sharing a file-backed state store.

Components
~~~~~~~~~~
- ``task_store``: tasks with a dependency graph, mutated by locked
  read-modify-write transactions on ``tasks.json``.
- ``scheduler``: pure eligibility, priority order, state machine and
  deadlock rules.
- ``agent_registry`` / ``reaper``: heartbeat-derived liveness; stale agents
  are failed and their in-progress tasks return to the pool.
- ``plans`` / ``executor``: named batches of tasks driven to terminal states.
- ``dispatcher`` / ``worker``: detached worker processes that exchange
  ``task_<id>.json`` and ``result_<id>.json`` artifacts with the executor.

Processes never talk to each other directly. Every shared document sits
behind a sidecar ``<file>.lock`` and is replaced atomically, so any number of
CLI invocations, executors, reapers and workers can run side by side.
"""
