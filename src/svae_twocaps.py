# file: svae_twocaps.py

import math
import torch
import torch.nn as nn
import torch.nn.functional as F
from typing import Callable, Tuple

from base_svae import BaseSVAE
from hyperspherical import normalize
from vmf_density import log_vmf_density, mmd_imq

# softplus(_KAPPA_ONE) == 1
_KAPPA_ONE = math.log(math.e - 1)


class SVAETwoCaps(BaseSVAE):
    """
    S-VAE with a learnable VMF prior p(z) = VMF(prior_mu, prior_kappa),
    where prior_kappa = softplus(prior_kappa_raw) stays positive under training.

    Normal data is pushed towards the cap around +prior_mu and labeled
    anomalies towards the antipodal cap around -prior_mu
    (see `wloss_semi_supervised`).

    variant:
      - "unit":        decoder outputs n_input means, unit variance
      - "scalarsigma": decoder outputs n_input + 1 values, the last one is
                       mapped through softplus to a per-sample scalar variance
    """
    VARIANTS = ("unit", "scalarsigma")

    def __init__(
        self,
        encoder: nn.Module,
        decoder: nn.Module,
        n_hidden: int,
        n_latent: int,
        prior_mu: torch.Tensor | None = None,
        variant: str = "unit",
        kappa_scale: float = 100.0,
    ):
        super().__init__(encoder, decoder, n_hidden, n_latent)
        if variant not in self.VARIANTS:
            raise ValueError(f"Unknown variant: {variant}")
        self.variant = variant
        self.kappa_scale = kappa_scale

        if prior_mu is None:
            prior_mu = torch.randn(n_latent)
        prior_mu = torch.as_tensor(prior_mu, dtype=torch.get_default_dtype()).reshape(1, -1)
        self.prior_mu = nn.Parameter(normalize(prior_mu).reshape(-1))
        self.prior_kappa_raw = nn.Parameter(torch.full((1,), _KAPPA_ONE))

    @classmethod
    def _decoder_width(cls, n_input: int, variant: str = "unit", **kwargs) -> int:
        return n_input + 1 if variant == "scalarsigma" else n_input

    @property
    def prior_kappa(self) -> torch.Tensor:
        return F.softplus(self.prior_kappa_raw)

    def _kappa_transform(self, h: torch.Tensor) -> torch.Tensor:
        return torch.sigmoid(h) * self.kappa_scale

    # ---- prior ----
    def set_normal_direction(self, mu: torch.Tensor, trainable: bool = True):
        """Point the normal cap at `mu` and reset prior_kappa to 1."""
        mu = torch.as_tensor(mu, dtype=self.prior_mu.dtype, device=self.prior_mu.device)
        with torch.no_grad():
            self.prior_mu.copy_(normalize(mu.detach().reshape(1, -1)).reshape(-1))
            self.prior_kappa_raw.fill_(_KAPPA_ONE)
        self.prior_mu.requires_grad_(trainable)
        self.prior_kappa_raw.requires_grad_(trainable)

    def set_normal_hypersphere(self, x: torch.Tensor, trainable: bool = True):
        """Point the normal cap at the (mean) encoder direction of x."""
        with torch.no_grad():
            mu = self.mu_from_x(x if x.dim() > 1 else x.unsqueeze(0))
            mu = normalize(mu.mean(dim=0, keepdim=True))
        self.set_normal_direction(mu, trainable=trainable)

    def log_pz_from_z(self, z: torch.Tensor) -> torch.Tensor:
        return log_vmf_density(z, normalize(self.prior_mu), self.prior_kappa)

    def sample_prior(self, n: int, direction: int = 1) -> torch.Tensor:
        """n samples from the normal cap (direction=1) or the anomaly cap (direction=-1)."""
        mu = normalize(direction * self.prior_mu).unsqueeze(0).repeat(n, 1)
        kappa = self.prior_kappa.unsqueeze(0).repeat(n, 1)
        return self.sample_z(mu, kappa)

    # ---- decoder ----
    def decode_params(self, z: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor | None]:
        out = self.decoder(z)
        if self.variant == "unit":
            return out, None
        return out[..., :-1], F.softplus(out[..., -1:])

    # ---- losses ----
    def wloss_semi_supervised(
        self,
        x: torch.Tensor,
        y: torch.Tensor,
        beta: float = 1.0,
        distance: Callable[[torch.Tensor, torch.Tensor], torch.Tensor] = mmd_imq,
        alpha: float = 0.5,
    ) -> torch.Tensor:
        """
        Wasserstein-style loss using labels y (0 normal, 1 anomaly).

        Normal and anomalous rows are resampled with replacement to the
        batch size; normal latents are matched against the +prior_mu cap
        and anomalous ones against the -prior_mu cap, weighted alpha and
        1 - alpha. Without anomalies in the batch this is `wloss`.
        """
        n = x.shape[0]
        mu, kappa = self.zparams(x)
        z = self.sample_z(mu, kappa)
        recon = self.reconstruction_loss(x, z)

        anom_ids = torch.nonzero(y == 1).flatten()
        if len(anom_ids) == 0:
            return recon + beta * distance(z, self.sample_prior(n))

        anom_ids = anom_ids[torch.randint(len(anom_ids), (n,), device=anom_ids.device)]
        z_anom = self.sample_z(mu[anom_ids], kappa[anom_ids])
        omega_anom = distance(z_anom, self.sample_prior(n, direction=-1))

        norm_ids = torch.nonzero(y == 0).flatten()
        if len(norm_ids) == 0:
            return recon + beta * (1 - alpha) * omega_anom

        norm_ids = norm_ids[torch.randint(len(norm_ids), (n,), device=norm_ids.device)]
        z_norm = self.sample_z(mu[norm_ids], kappa[norm_ids])
        omega_norm = distance(z_norm, self.sample_prior(n))
        return recon + beta * (alpha * omega_norm + (1 - alpha) * omega_anom)
