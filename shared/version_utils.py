"""Version comparison utilities shared across the project."""

from semver import Version


def parse_k8s_version(git_version: str) -> Version:
    """Parse a Kubernetes gitVersion such as ``v1.29.3+k3s1``.

    Raises:
        ValueError: If the string is not a valid semantic version.
    """
    return Version.parse(git_version.strip().lstrip("v"))


def version_at_most(version: str, ceiling: str) -> bool:
    """Return True if the Kubernetes *version* is <= *ceiling*."""
    return parse_k8s_version(version) <= Version.parse(ceiling)
