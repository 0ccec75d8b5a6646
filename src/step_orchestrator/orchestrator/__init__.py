"""Plan-and-step orchestration for LLM-driven projects.

Why not a general workflow engine?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Steps here are produced at runtime by a model, typed by an executor tag, and
may ask the orchestrator to throw the remaining plan away. The pieces that
matter are small and tightly coupled to that contract:

- A closed registry mapping step types to executors.
- A retry runner with a process-wide throttle in front of the model.
- A FIFO request queue for model calls made from sandboxed code.
- A subprocess bridge that runs generated code with a narrow import surface.

Prefect wraps the outer loop (see ``step_orchestrator.flows``); everything
inside one ``plan_and_advance`` call stays in this package.
"""
