"""Persistence of tasks, the task index and the workflow state."""
