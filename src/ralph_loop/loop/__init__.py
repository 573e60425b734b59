"""Iteration loop that drives a CLI coding agent through a task checklist.

Each iteration hands one task to an external agent process (claude,
opencode, or any command template), then gates progress on the project's
own test command:

- Agent output is classified for rate limiting (soft throttling versus hard
  quota exhaustion) and drives backoff or a one-time model fallback.
- Test runs are compared against a baseline captured before the first
  iteration, so failures that already existed never block progress while
  newly introduced ones do.
- Every outcome is appended to a per-project progress log that the agent
  reads on the next iteration, and the latest iteration/task is persisted
  for crash visibility.
"""
