# file: vmf_density.py

import math
import torch
from bessel import bessel_ratio, log_ive

KAPPA_EPS = 1e-10
LOG_2PI = math.log(2 * math.pi)


def _as_kappa(kappa, like: torch.Tensor | None = None) -> torch.Tensor:
    if not torch.is_tensor(kappa):
        dtype = like.dtype if like is not None else torch.get_default_dtype()
        kappa = torch.as_tensor(kappa, dtype=dtype)
    # kappa -> 0 is the uniform limit; log(kappa) needs a floor
    return kappa.clamp_min(KAPPA_EPS)


def log_vmf_normalizer(dim: int, kappa) -> torch.Tensor:
    """
    log C_d(kappa) = (d/2 - 1) log k - (d/2) log 2pi - log I_{d/2-1}(k),
    using the exponentially scaled Bessel value.
    """
    kappa = _as_kappa(kappa)
    v = dim / 2 - 1
    return v * torch.log(kappa) - (dim / 2) * LOG_2PI - kappa - log_ive(v, kappa)


def vmf_entropy(dim: int, kappa) -> torch.Tensor:
    """Entropy of the Von Mises-Fisher distribution on S^{dim-1}."""
    kappa = _as_kappa(kappa)
    return -kappa * bessel_ratio(dim / 2, kappa) - log_vmf_normalizer(dim, kappa)


def hyperspherical_uniform_entropy(dim: int) -> float:
    """log of the surface area of S^{dim-1}."""
    return dim / 2 * math.log(math.pi) + math.log(2) - math.lgamma(dim / 2)


def kl_divergence(dim: int, kappa) -> torch.Tensor:
    """KL( VMF(mu, kappa) || HU(S^{dim-1}) ); zero at kappa = 0, growing with kappa."""
    return hyperspherical_uniform_entropy(dim) - vmf_entropy(dim, kappa)


def log_vmf_density(x: torch.Tensor, mu: torch.Tensor, kappa) -> torch.Tensor:
    """
    Log-density of rows of x under VMF(mu, kappa).

    Args:
        x: (B, D)
        mu: (D,) or (B, D)
        kappa: scalar, (B,) or (B, 1)
    Returns:
        (B,)
    """
    kappa = _as_kappa(kappa, like=x)
    if kappa.dim() == 2:
        kappa = kappa.squeeze(-1)
    return kappa * torch.sum(mu * x, dim=-1) + log_vmf_normalizer(x.shape[-1], kappa)


def log_normal(x: torch.Tensor, mu: torch.Tensor | None = None, var: torch.Tensor | None = None) -> torch.Tensor:
    """
    Gaussian log-likelihood summed over the last dimension.

    With var=None the covariance is the identity; otherwise var is a
    diagonal (or broadcastable scalar-per-row) variance.
    """
    if mu is not None:
        x = x - mu
    if var is None:
        return -torch.sum(x ** 2, dim=-1) / 2 - x.shape[-1] * LOG_2PI / 2
    var = var.expand_as(x)
    return -torch.sum(x ** 2 / var + torch.log(var * 2 * math.pi), dim=-1) / 2


def pairwise_cos(x: torch.Tensor, y: torch.Tensor | None = None) -> torch.Tensor:
    """Cosine distance between rows; clamped since float error can push it below 0."""
    y = x if y is None else y
    return torch.clamp(1 - x @ y.T, min=0)


def imq_kernel(x: torch.Tensor, y: torch.Tensor | None = None, c: float = 1.0) -> torch.Tensor:
    """Mean inverse-multiquadric kernel value over pairwise cosine distances."""
    if y is None:
        n = x.shape[0]
        if n < 2:
            return torch.zeros((), dtype=x.dtype, device=x.device)
        return torch.sum(c / (c + pairwise_cos(x))) / (n * (n - 1))
    return torch.sum(c / (c + pairwise_cos(x, y))) / (x.shape[0] * y.shape[0])


def mmd_imq(x: torch.Tensor, y: torch.Tensor, c: float = 1.0) -> torch.Tensor:
    """Maximum mean discrepancy between two sets of points on the sphere."""
    return imq_kernel(x, c=c) + imq_kernel(y, c=c) - 2 * imq_kernel(x, y, c=c)
