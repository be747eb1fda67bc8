"""Configuration system for taskweave.

Type-safe settings built on Pydantic, loaded from YAML with environment
variable interpolation and ``TASKWEAVE_`` overrides.

Key Components:
    - TaskweaveSettings: Main configuration container with YAML loading support
    - WorkspaceConfig: Location of the data directory
    - TasksConfig: Defaults for new tasks
    - LoggingConfig: Log level and renderer

Example:
    >>> from taskweave.config.settings import TaskweaveSettings
    >>> settings = TaskweaveSettings.from_yaml("taskweave.yaml")
    >>> settings.data_path
"""
