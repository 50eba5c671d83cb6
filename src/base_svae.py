# file: base_svae.py

import logging
import torch
import torch.nn as nn
import torch.nn.functional as F
from abc import ABC, abstractmethod
from typing import Callable, Tuple

from hyperspherical import normalize, sample_z
from networks import build_network
from vmf_density import hyperspherical_uniform_entropy, kl_divergence, log_normal, log_vmf_density, mmd_imq

logger = logging.getLogger(__name__)


class BaseSVAE(nn.Module, ABC):
    """
    Hyperspherical VAE: q(z|x) = VMF(mu(x), kappa(x)) on S^{n_latent-1}.

    The encoder maps x to a hidden vector of width `n_hidden`, from which
    the mean direction (normalized Linear head) and the concentration
    (Linear head + positivity map) are computed. The decoder maps z back
    to input space. Both are arbitrary differentiable modules.

    Subclasses define the prior and the kappa positivity map.
    """
    def __init__(
        self,
        encoder: nn.Module,
        decoder: nn.Module,
        n_hidden: int,
        n_latent: int,
    ):
        super().__init__()
        if n_latent <= 3:
            raise ValueError(f"n_latent must be > 3 for the VMF sampler, got {n_latent}")
        self.encoder = encoder
        self.decoder = decoder
        self.n_hidden = n_hidden
        self.n_latent = n_latent
        # depends on n_latent only
        self._hue = hyperspherical_uniform_entropy(n_latent)

        self.qz_mu = nn.Linear(n_hidden, n_latent)
        self.qz_kappa = nn.Linear(n_hidden, 1)

    @classmethod
    def from_dims(
        cls,
        n_input: int,
        n_hidden: int,
        n_latent: int,
        n_layers: int = 2,
        activation: nn.Module = nn.ReLU(),
        **kwargs,
    ):
        """Build with MLP encoder (n_layers) and linear-output MLP decoder (n_layers + 1)."""
        encoder = build_network(n_input, n_hidden, n_hidden, n_layers, activation)
        decoder = build_network(
            n_latent, cls._decoder_width(n_input, **kwargs), n_hidden, n_layers + 1,
            activation, last_activation=nn.Identity(),
        )
        return cls(encoder, decoder, n_hidden, n_latent, **kwargs)

    @classmethod
    def _decoder_width(cls, n_input: int, **kwargs) -> int:
        return n_input

    @property
    def hue(self) -> float:
        """Entropy of the hyperspherical uniform distribution on the latent sphere."""
        return self._hue

    @abstractmethod
    def _kappa_transform(self, h: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    @abstractmethod
    def log_pz_from_z(self, z: torch.Tensor) -> torch.Tensor:
        """Log prior density of latent rows z, shape (B,)."""
        raise NotImplementedError

    @abstractmethod
    def sample_prior(self, n: int) -> torch.Tensor:
        raise NotImplementedError

    # ---- latent ----
    def zparams(self, x: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        hidden = self.encoder(x)                       # [B, n_hidden]
        mu = normalize(self.qz_mu(hidden))             # [B, n_latent]
        kappa = self._kappa_transform(self.qz_kappa(hidden))  # [B, 1]
        return mu, kappa

    def mu_from_x(self, x: torch.Tensor) -> torch.Tensor:
        return normalize(self.qz_mu(self.encoder(x)))

    def sample_z(self, mu: torch.Tensor, kappa: torch.Tensor) -> torch.Tensor:
        return sample_z(mu, kappa)

    def z_from_x(self, x: torch.Tensor) -> torch.Tensor:
        return self.sample_z(*self.zparams(x))

    # ---- decoder ----
    def decode_params(self, z: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor | None]:
        """Mean and variance of p(x|z); variance None means unit variance."""
        return self.decoder(z), None

    def infer(self, x: torch.Tensor) -> torch.Tensor:
        """Sample z from q(z|x) and return the decoded mean."""
        return self.decode_params(self.z_from_x(x))[0]

    def forward(self, x: torch.Tensor) -> dict:
        mu, kappa = self.zparams(x)
        z = self.sample_z(mu, kappa)
        px_mu, px_var = self.decode_params(z)
        return {"z": z, "latent_params": (mu, kappa), "px_mu": px_mu, "px_var": px_var}

    def log_px_given_z(self, x: torch.Tensor, z: torch.Tensor) -> torch.Tensor:
        mean, var = self.decode_params(z)
        return log_normal(x, mean, var)

    def log_px_expected_z(self, x: torch.Tensor) -> torch.Tensor:
        """Reconstruction log-likelihood at the encoder mean direction."""
        return self.log_px_given_z(x, self.mu_from_x(x))

    # ---- losses ----
    def reconstruction_loss(self, x: torch.Tensor, z: torch.Tensor) -> torch.Tensor:
        mean, var = self.decode_params(z)
        if var is None:
            return F.mse_loss(mean, x)
        return -torch.mean(log_normal(x, mean, var))

    def loss(self, x: torch.Tensor, beta: float = 1.0) -> torch.Tensor:
        """Reconstruction error + beta * mean KL(q(z|x) || uniform)."""
        mu, kappa = self.zparams(x)
        z = self.sample_z(mu, kappa)
        recon = self.reconstruction_loss(x, z)
        kl = kl_divergence(self.n_latent, kappa)
        logger.debug("recon=%.4f | kl: %s x %.4f", recon.item(), beta, kl.mean().item())
        return recon + beta * torch.mean(kl)

    def wloss(
        self,
        x: torch.Tensor,
        beta: float = 1.0,
        distance: Callable[[torch.Tensor, torch.Tensor], torch.Tensor] = mmd_imq,
    ) -> torch.Tensor:
        """Reconstruction error + beta * distance(encoded latents, prior samples)."""
        z = self.z_from_x(x)
        prior = self.sample_prior(z.shape[0])
        omega = distance(z, prior)
        recon = self.reconstruction_loss(x, z)
        logger.debug("recon=%.4f | wass-dist: %s x %.4f", recon.item(), beta, omega.item())
        return recon + beta * omega

    # ---- likelihoods ----
    def log_pz(self, x: torch.Tensor) -> torch.Tensor:
        return self.log_pz_from_z(self.mu_from_x(x))

    def pz(self, x: torch.Tensor) -> torch.Tensor:
        return torch.exp(self.log_pz(x))

    def pz_from_z(self, z: torch.Tensor) -> torch.Tensor:
        return torch.exp(self.log_pz_from_z(z))

    @torch.no_grad()
    def log_px(self, x: torch.Tensor, k: int = 100) -> torch.Tensor:
        """
        Importance-weighted estimate of log p(x) per row, with k samples of q(z|x):

            log sum_k exp( log p(x|z_k) + log p(z_k) - log q(z_k|x) )

        The sum is not divided by k.
        """
        if x.dim() == 1:
            x = x.unsqueeze(0)
        out = []
        for xi in x:
            xi = xi.unsqueeze(0)
            mu, kappa = self.zparams(xi)
            mu, kappa = mu.repeat(k, 1), kappa.repeat(k, 1)
            z = self.sample_z(mu, kappa)
            log_pxgivenz = self.log_px_given_z(xi.repeat(k, 1), z)
            log_qzgivenx = log_vmf_density(z, mu, kappa)
            out.append(torch.logsumexp(log_pxgivenz + self.log_pz_from_z(z) - log_qzgivenx, dim=0))
        return torch.stack(out)

    # ---- Jacobian-corrected densities ----
    def _decoder_mean(self, z: torch.Tensor) -> torch.Tensor:
        return self.decode_params(z)[0]

    @staticmethod
    def _log_abs_det(jac: torch.Tensor) -> torch.Tensor:
        # times 2: the chart onto the sphere collapses one dimension
        return torch.sum(torch.log(torch.abs(torch.linalg.svdvals(jac)))) * 2

    def _jacobian(self, fn, a: torch.Tensor) -> torch.Tensor:
        assert a.shape[0] == 1, f"expected a single instance, got batch of {a.shape[0]}"
        return torch.autograd.functional.jacobian(lambda v: fn(v.unsqueeze(0)).squeeze(0), a[0])

    def _log_det_jacobian_encoder_single(self, x: torch.Tensor) -> torch.Tensor:
        return self._log_abs_det(self._jacobian(self.mu_from_x, x))

    def _log_det_jacobian_decoder_single(self, z: torch.Tensor) -> torch.Tensor:
        return self._log_abs_det(self._jacobian(self._decoder_mean, z))

    def _log_pz_jacobian_encoder_single(self, x: torch.Tensor) -> torch.Tensor:
        d = self._log_det_jacobian_encoder_single(x)
        return (d + self.log_pz(x)[0]).detach()

    def _log_pz_jacobian_decoder_single(self, z: torch.Tensor) -> torch.Tensor:
        d = self._log_det_jacobian_decoder_single(z)
        return (-d + self.log_pz_from_z(z)[0]).detach()

    @staticmethod
    def _per_row(fn, a: torch.Tensor) -> torch.Tensor:
        if a.dim() == 1:
            a = a.unsqueeze(0)
        return torch.stack([fn(a[i:i + 1]) for i in range(a.shape[0])])

    def log_det_jacobian_encoder(self, x: torch.Tensor) -> torch.Tensor:
        return self._per_row(lambda a: self._log_det_jacobian_encoder_single(a).detach(), x)

    def log_det_jacobian_decoder(self, z: torch.Tensor) -> torch.Tensor:
        return self._per_row(lambda a: self._log_det_jacobian_decoder_single(a).detach(), z)

    def log_pz_jacobian_encoder(self, x: torch.Tensor) -> torch.Tensor:
        """log p(z) at the encoder mean plus 2 * sum log|singular values| of d mu / d x, per row."""
        return self._per_row(self._log_pz_jacobian_encoder_single, x)

    def log_pz_jacobian_decoder(self, z: torch.Tensor) -> torch.Tensor:
        """log p(z) minus 2 * sum log|singular values| of the decoder Jacobian, per row."""
        return self._per_row(self._log_pz_jacobian_decoder_single, z)

    # ---- inference-time refinement ----
    def _refine_z(self, x: torch.Tensor, objective, steps: int, lr: float) -> torch.Tensor:
        # optimize an unconstrained w, z = w / |w| stays on the sphere
        w = self.mu_from_x(x).detach().clone().requires_grad_(True)
        opt = torch.optim.Adam([w], lr=lr)
        initial = objective(normalize(w)).item()
        for _ in range(steps):
            (w.grad,) = torch.autograd.grad(-objective(normalize(w)), w)
            opt.step()
        final = objective(normalize(w)).item()
        logger.info("initial = %.4f final = %.4f", initial, final)
        return normalize(w).detach()

    def closest_z(self, x: torch.Tensor, steps: int = 100, lr: float = 1e-3) -> torch.Tensor:
        """Latent maximizing mean( log p(x|z) + log p(z) ), started from the encoder mean."""
        return self._refine_z(
            x, lambda z: torch.mean(self.log_px_given_z(x, z) + self.log_pz_from_z(z)), steps, lr,
        )

    def manifold_z(self, x: torch.Tensor, steps: int = 100, lr: float = 1e-3) -> torch.Tensor:
        """Latent maximizing mean( log p(x|z) ), started from the encoder mean."""
        return self._refine_z(x, lambda z: torch.mean(self.log_px_given_z(x, z)), steps, lr)
