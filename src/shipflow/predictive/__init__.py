"""Predictive branches: speculative batches of merge requests validated by CI.

A predictive build opens one branch per stack, each carrying the merge
requests that go out together. The controller walks a branch through run,
verify and (optionally) abort tasks, reading the CI summary each task prints,
and settles the member merge requests once the branch reaches a terminal
state: merged on ``completed``, rejected (with their stacked dependents) on
``failed``.

Tasks are rows in the shared SQLite queue, so delivery is at-least-once and
every handler here tolerates being called again for the same task.
"""
