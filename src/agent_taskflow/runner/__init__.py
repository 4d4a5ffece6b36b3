"""Task runner for resumable CLI coding agents.

The runner drives one task at a time through an external coding agent:
the agent's ``stream-json`` output is reduced to a plain transcript
(``stream``), a third-party classifier decides whether the agent is done
(``judge``), and ``controller`` resumes the agent session until the verdict
is terminal or the retry ceiling is hit. ``queue_store`` owns the on-disk
task list and ``services`` ties the pieces together for one queue run.
"""
