"""promote-release: promote CI toolchain builds to public distribution.

Resolves the commit and version a channel should ship, stages the CI
artifacts, recompresses them, writes a signed manifest, publishes
everything to the public object store behind a release marker, and purges
the CDN in front of it.
"""

__version__ = "0.1.0"
__description__ = "Release promotion pipeline for toolchain distribution channels"

from promote_release.config import PromoteConfig
from promote_release.core.orchestrator import Orchestrator

__all__ = ["Orchestrator", "PromoteConfig", "__version__"]
