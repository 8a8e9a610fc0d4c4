"""Rails Dockerizer package initialization."""

__all__ = [
    "cli",
    "config_store",
    "options",
    "project_scanner",
    "toolchain",
    "tech_detector",
    "package_resolver",
    "env_resolver",
    "template_engine",
    "dockerfile_generator",
    "dockerfile_checker",
    "fly_config",
]
