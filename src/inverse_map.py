# file: inverse_map.py

import logging
import torch
from typing import Callable

logger = logging.getLogger(__name__)


def find_inverse(
    func: Callable[[torch.Tensor], torch.Tensor],
    size: int,
    target: torch.Tensor,
    precision: float = 1e-3,
    lr: float = 0.01,
    max_iter: int = 1000,
) -> torch.Tensor:
    """
    Find x with func(x) ~= target by minimizing ||func(x) - target||^2 with Adam.

    Stops when the squared error drops below `precision` or after
    `max_iter` iterations, whichever comes first. Hitting the cap is not an
    error: a warning is logged and the last iterate is returned.

    Args:
        func: differentiable map from (1, size) to target's shape
        size: dimension of the preimage
        target: (1, n) or (n,) point to invert
    Returns:
        (size,) tensor, detached
    """
    target = target.detach().reshape(1, -1)
    x = torch.rand(1, size, dtype=target.dtype, device=target.device, requires_grad=True)
    opt = torch.optim.Adam([x], lr=lr)

    def _loss():
        return torch.sum((func(x) - target) ** 2)

    with torch.enable_grad():
        loss = _loss()
        i = 1
        while loss.item() > precision and i < max_iter:
            # grad w.r.t. x only; func's own parameters are left untouched
            (x.grad,) = torch.autograd.grad(loss, x)
            opt.step()
            loss = _loss()
            i += 1

    if loss.item() > precision:
        logger.warning(
            "find_inverse stopped after %d iterations with squared error %.6f > %.6f",
            i, loss.item(), precision,
        )
    return x.detach().reshape(-1)
