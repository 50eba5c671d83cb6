# file: hyperspherical.py
"""
Sampling on the unit hypersphere S^{d-1}.

Von Mises-Fisher draws follow Wood (1994): the polar component omega is
drawn by rejection sampling, the tangential component uniformly on
S^{d-2}, and the pair is rotated onto mu with a Householder reflection.

Gradients: the accepted Beta draw eps is a sampled constant, while omega
is recomputed from eps and a kappa-dependent b, so the reparameterized
sample is differentiable in both mu and kappa. The accept/reject step
itself contributes no gradient.
"""

import logging
import math
import torch
from torch.distributions import Beta

logger = logging.getLogger(__name__)

MAX_REJECTION_ROUNDS = 10000


def normalize(x: torch.Tensor) -> torch.Tensor:
    """Project every row of x onto the unit sphere."""
    eps = torch.finfo(x.dtype).eps
    return x / torch.sqrt(torch.sum(x ** 2, dim=-1, keepdim=True) + eps)


def sample_hyperspherical_uniform(shape, dtype=None, device=None) -> torch.Tensor:
    v = torch.randn(*shape, dtype=dtype, device=device)
    return normalize(v)


def _wood_constants(dim: int, kappa: torch.Tensor):
    m1 = dim - 1
    c = torch.sqrt(4 * kappa ** 2 + m1 ** 2)
    # (-2k + c) / (m - 1) rewritten to avoid cancellation for large kappa
    b = m1 / (2 * kappa + c)
    a = (m1 + 2 * kappa + c) / 4
    d = (4 * a * b) / (1 + b) - m1 * math.log(m1)
    return a, b, d


def _is_accepted(eps, u, dim: int, a, b, d) -> torch.Tensor:
    t = 2 * a * b / (1 - (1 - b) * eps)
    return (dim - 1) * torch.log(t) - t + d >= torch.log(u)


def sample_omega(dim: int, kappa: torch.Tensor, max_rounds: int = MAX_REJECTION_ROUNDS) -> torch.Tensor:
    """
    Polar coordinate omega = mu^T z of a VMF draw, same shape as kappa.

    Only rejected entries are redrawn each round. If `max_rounds` is
    exhausted a warning is logged and the current candidates are returned.
    """
    with torch.no_grad():
        a, b, d = _wood_constants(dim, kappa.detach())

        half = torch.tensor((dim - 1) / 2, dtype=kappa.dtype, device=kappa.device)
        beta = Beta(half, half)
        eps = beta.sample(kappa.shape)
        u = torch.rand(kappa.shape, dtype=kappa.dtype, device=kappa.device)

        accepted = _is_accepted(eps, u, dim, a, b, d)
        rounds = 0
        while not bool(accepted.all()) and rounds < max_rounds:
            mask = ~accepted
            n = int(mask.sum())
            eps[mask] = beta.sample((n,))
            u[mask] = torch.rand(n, dtype=u.dtype, device=u.device)
            accepted[mask] = _is_accepted(eps[mask], u[mask], dim, a[mask], b[mask], d[mask])
            rounds += 1

    if not bool(accepted.all()):
        logger.warning(
            "VMF rejection sampler stopped after %d rounds with %d/%d samples unaccepted "
            "(dim=%d, kappa=%s)",
            max_rounds, int((~accepted).sum()), accepted.numel(), dim, kappa.detach()[~accepted].tolist(),
        )

    # eps is fixed, b carries the gradient to kappa
    _, b, _ = _wood_constants(dim, kappa)
    return (1 - (1 + b) * eps) / (1 - (1 - b) * eps)


def householder_rotation(zprime: torch.Tensor, mu: torch.Tensor) -> torch.Tensor:
    """Reflect zprime so that the pole e1 is mapped onto mu."""
    e1 = torch.zeros_like(mu)
    e1[..., 0] = 1
    u = normalize(e1 - mu)
    return zprime - 2 * torch.sum(zprime * u, dim=-1, keepdim=True) * u


def sample_z(mu: torch.Tensor, kappa: torch.Tensor, max_rounds: int = MAX_REJECTION_ROUNDS) -> torch.Tensor:
    """
    Reparameterized VMF sample.

    Args:
        mu: (B, D) unit mean directions
        kappa: (B, 1) or (B,) concentrations
    Returns:
        z: (B, D) unit vectors
    """
    dim = mu.shape[-1]
    if kappa.dim() == mu.dim() - 1:
        kappa = kappa.unsqueeze(-1)
    kappa = kappa.expand(*mu.shape[:-1], 1)

    omega = sample_omega(dim, kappa, max_rounds=max_rounds)  # (B, 1)
    v = torch.randn(*mu.shape[:-1], dim - 1, dtype=mu.dtype, device=mu.device)
    v = normalize(v)
    eps = torch.finfo(mu.dtype).eps
    zprime = torch.cat([omega, torch.sqrt(1 - omega ** 2 + eps) * v], dim=-1)
    return householder_rotation(zprime, mu)
