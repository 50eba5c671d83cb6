# file: bessel.py

import numpy as np
import scipy.special
import torch
from numbers import Number

_TINY = 1e-290


def _log_ive_np(v: float, z: np.ndarray) -> np.ndarray:
    """log(exp(-z) * I_v(z)) in float64, falling back to the small-z series
    leading term where ive underflows."""
    shape = np.shape(z)
    z = np.atleast_1d(z)
    value = scipy.special.ive(v, z)
    # subnormal results carry too few bits for the log
    small = ~(np.abs(value) > _TINY)
    with np.errstate(divide="ignore", invalid="ignore"):
        out = np.log(value)
    if small.any():
        zs = z[small]
        out[small] = v * np.log(zs / 2.0) - scipy.special.gammaln(v + 1.0) - zs
    return out.reshape(shape)


def _to_np(z: torch.Tensor) -> np.ndarray:
    return z.detach().cpu().numpy().astype(np.float64)


class IveFunction(torch.autograd.Function):
    """
    Exponentially scaled modified Bessel function of the first kind,
    exp(-z) * I_v(z), differentiable in z.

    d/dz ive(v, z) = ive(v - 1, z) - ive(v, z) * (v + z) / z
    """

    @staticmethod
    def forward(ctx, v, z):
        assert isinstance(v, Number), "v must be a scalar"
        ctx.save_for_backward(z)
        ctx.v = v
        z_np = _to_np(z)
        if np.isclose(v, 0):
            output = scipy.special.i0e(z_np)
        elif np.isclose(v, 1):
            output = scipy.special.i1e(z_np)
        else:
            output = scipy.special.ive(v, z_np)
        return torch.as_tensor(output, dtype=z.dtype, device=z.device)

    @staticmethod
    def backward(ctx, grad_output):
        z = ctx.saved_tensors[-1]
        v = ctx.v
        grad = ive(v - 1, z) - ive(v, z) * (v + z) / z
        return None, grad_output * grad


class LogIveFunction(torch.autograd.Function):
    """log(ive(v, z)) computed without going through an underflowing ive."""

    @staticmethod
    def forward(ctx, v, z):
        assert isinstance(v, Number), "v must be a scalar"
        ctx.save_for_backward(z)
        ctx.v = v
        return torch.as_tensor(_log_ive_np(v, _to_np(z)), dtype=z.dtype, device=z.device)

    @staticmethod
    def backward(ctx, grad_output):
        z = ctx.saved_tensors[-1]
        v = ctx.v
        z_np = _to_np(z)
        # ive(v-1)/ive(v) - (v + z)/z
        ratio = np.exp(_log_ive_np(v - 1, z_np) - _log_ive_np(v, z_np))
        grad = torch.as_tensor(ratio, dtype=z.dtype, device=z.device) - (v + z) / z
        return None, grad_output * grad


def ive(v, z: torch.Tensor) -> torch.Tensor:
    return IveFunction.apply(v, z)


def log_ive(v, z: torch.Tensor) -> torch.Tensor:
    return LogIveFunction.apply(v, z)


def besseli_scaled(v, kappa: torch.Tensor) -> torch.Tensor:
    """exp(-kappa) * I_v(kappa) for real order v >= 0 and kappa > 0."""
    if not torch.is_tensor(kappa):
        kappa = torch.as_tensor(kappa, dtype=torch.float64)
    return ive(v, kappa)


def bessel_ratio(v, kappa: torch.Tensor) -> torch.Tensor:
    """I_v(kappa) / I_{v-1}(kappa), stable for both tiny and huge kappa."""
    return torch.exp(log_ive(v, kappa) - log_ive(v - 1, kappa))
