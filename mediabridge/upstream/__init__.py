from .client import Credential, UpstreamClient

__all__ = ["Credential", "UpstreamClient"]
