"""Hosted providers and their provider-side verifiers."""

from __future__ import annotations

from hosted_e2e.config import E2ESettings
from hosted_e2e.providers.base import HostedProvider
from hosted_e2e.validation import validate_provider


def get_provider(settings: E2ESettings, name: str | None = None, **kwargs: object) -> HostedProvider:
    """Build the provider named by ``name`` (default: ``settings.provider``).

    Provider modules are imported on demand so that, e.g., an EKS run does not
    need the Azure SDK to be importable.
    """
    name = (name or settings.provider).lower()
    validate_provider(name)
    if name == "eks":
        from hosted_e2e.providers.eks import EKSProvider

        return EKSProvider(settings, **kwargs)  # type: ignore[arg-type]
    if name == "gke":
        from hosted_e2e.providers.gke import GKEProvider

        return GKEProvider(settings, **kwargs)  # type: ignore[arg-type]
    from hosted_e2e.providers.aks import AKSProvider

    return AKSProvider(settings, **kwargs)  # type: ignore[arg-type]


__all__ = ["HostedProvider", "get_provider"]
