"""
Constants
Centralised storage for CI environment variable names, trace markers
and container engine baselines.
"""
TIMEOUT_MARKER = "TIMEOUT"

# Server identity markers injected into every command environment
CI_SERVER = "yes"
CI_SERVER_NAME = "GitLab CI"

# Changes every fresh container reports from the engine, regardless of command
BASELINE_FS_CHANGES = frozenset({
    ("/dev", 0),
    ("/dev/kmsg", 1),
})

PROJECT_DIR_PREFIX = "project-"
DOCKERFILE_NAME = "Dockerfile"
