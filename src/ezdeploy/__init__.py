"""ezdeploy - Deploy a Git-hosted web application to a single Kubernetes host.

ezdeploy connects to one Linux server over SSH, provisions the tooling it
needs (Docker, MicroK8s, Pulumi or Helm), syncs the application source with
a per-project deploy key, builds the image on the server and applies a
Deployment, Service and TLS Ingress for it.
"""

from ezdeploy.config.loader import ConfigLoader, load_config
from ezdeploy.lib.errors import ConfigError, EzDeployError, PhaseFailedError

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "ConfigLoader",
    "ConfigError",
    "EzDeployError",
    "PhaseFailedError",
    "load_config",
]
