"""Core domain models.

Key Models:
    - Task: A unit of work with status, priority and dependencies
    - WorkflowState: The per-workspace phase singleton

Example:
    >>> from taskweave.models.domain import Task
    >>> task = Task(id="auth.login", module="auth", description="Login form")
"""
