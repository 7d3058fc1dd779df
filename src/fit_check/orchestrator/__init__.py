"""Run orchestration for the five-stage fit analysis.

Why a hand-written sequencer instead of a workflow engine?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
The pipeline is a fixed, linear list of five stages with one fan-out point
each for dimensions and secondary analysis. What it needs is narrow:

- A typed run state whose stage-owned fields can be checked on every load.
- Deterministic failure classification driving a per-stage retry policy.
- Suspension on blocking questions with a JSON snapshot, and resume that
  never re-runs a completed stage or re-scores a complete dimension.
- A single ordered event stream per run for SSE or CLI consumers.

A general engine would add persistence and scheduling machinery while the
stage ordering, suspension rule and event taxonomy would still live in
custom code. The sequencer plus an in-process registry keeps the whole
run lifecycle in a few modules that are easy to test with fake stages.
"""
