# file: svae.py

import torch
import torch.nn.functional as F
from base_svae import BaseSVAE
from hyperspherical import sample_hyperspherical_uniform


class SVAE(BaseSVAE):
    """
    S-VAE with a fixed hyperspherical uniform prior and a unit-variance
    Gaussian decoder.
    - q(z|x) = VMF(mu(x), kappa(x)), kappa = softplus(h) + 1
    - p(z) = HU(S^{n_latent-1})
    """
    def _kappa_transform(self, h: torch.Tensor) -> torch.Tensor:
        return F.softplus(h) + 1

    def log_pz_from_z(self, z: torch.Tensor) -> torch.Tensor:
        # uniform density is 1 / surface area = exp(-hue)
        return torch.full(z.shape[:-1], -self.hue, dtype=z.dtype, device=z.device)

    def sample_prior(self, n: int) -> torch.Tensor:
        ref = self.qz_mu.weight
        return sample_hyperspherical_uniform((n, self.n_latent), dtype=ref.dtype, device=ref.device)
