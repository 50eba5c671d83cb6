# file: knn_memory.py
"""
k-nearest-neighbour memory for few-shot learning of rare labels
(Kaiser et al., "Learning to Remember Rare Events", arXiv:1703.03129).

Keys are stored in input space (M) and compared in the space produced by
`encoder`, which must land on the unit hypersphere so that dot products
are cosine similarities. Label 1 marks an anomaly.
"""

import logging
import math
import torch
from typing import Callable, Tuple

from hyperspherical import normalize
from inverse_map import find_inverse
from vmf_density import log_vmf_density

logger = logging.getLogger(__name__)

ANOMALY = 1
NORMAL = 0


def vmf_mixture_log_likelihood(x: torch.Tensor, mus: torch.Tensor, kappa) -> torch.Tensor:
    """log of the equally weighted VMF mixture density with components at rows of mus."""
    n = mus.shape[0]
    if n == 0:
        return torch.tensor(-math.inf, dtype=x.dtype, device=x.device)
    lkh = log_vmf_density(x.reshape(1, -1).expand(n, -1), mus, kappa)
    return torch.logsumexp(lkh, dim=0) - math.log(n)


class KNNMemory:
    """
    Fixed-size key/label/age table.

    Attributes:
        M (torch.Tensor): (memory_size, key_size) stored keys
        V (torch.Tensor): (memory_size,) integer labels
        A (torch.Tensor): (memory_size,) integer ages
        k (int): neighbours consulted, at most memory_size
        alpha (float): margin between nearest positive and negative
        encoder: differentiable map from key space onto the unit sphere
    """

    def __init__(
        self,
        memory_size: int,
        key_size: int,
        k: int,
        label_count: int,
        encoder: Callable[[torch.Tensor], torch.Tensor] | None = None,
        alpha: float = 0.1,
        dtype: torch.dtype | None = None,
        device=None,
    ):
        """
        Initialize with random unit keys and random labels in [0, label_count).
        """
        if memory_size <= 0 or key_size <= 0:
            raise ValueError(f"memory_size and key_size must be positive, got {memory_size}, {key_size}")
        if k <= 0:
            raise ValueError(f"k must be positive, got {k}")
        dtype = torch.get_default_dtype() if dtype is None else dtype

        self.M = normalize(torch.rand(memory_size, key_size, dtype=dtype, device=device) * 2 - 1)
        self.V = torch.randint(label_count, (memory_size,), device=device)
        self.A = torch.zeros(memory_size, dtype=torch.long, device=device)
        self.k = min(k, memory_size)
        self.alpha = alpha
        self.encoder = normalize if encoder is None else encoder

    @property
    def memory_size(self) -> int:
        return self.M.shape[0]

    @property
    def key_size(self) -> int:
        return self.M.shape[1]

    def encoded_keys(self) -> torch.Tensor:
        # clone: M is modified in place after losses referencing it are built
        return self.encoder(self.M.clone())

    @staticmethod
    def _as_batch(keys: torch.Tensor) -> torch.Tensor:
        return keys.unsqueeze(0) if keys.dim() == 1 else keys

    # ---- lookups ----
    @torch.no_grad()
    def query(self, keys: torch.Tensor) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Nearest label per key and the anomaly score: the softmax weight of
        the anomaly-labelled keys among the k nearest. Memory is not modified.
        """
        q = self.encoder(self._as_batch(keys))
        similarity = self.encoded_keys() @ q.T          # [memory_size, B]
        values = self.V[similarity.argmax(dim=0)]
        top_sim, top_ids = similarity.topk(self.k, dim=0)  # [k, B]
        probs = torch.softmax(top_sim, dim=0)
        scores = torch.sum(probs * (self.V[top_ids] == ANOMALY), dim=0)
        return values, scores

    @torch.no_grad()
    def probabilistic_query(self, keys: torch.Tensor, kappa: float) -> Tuple[torch.Tensor, torch.Tensor]:
        """
        Nearest label per key and p(anomaly) from VMF mixtures centred on the
        anomalous and the normal keys among the k nearest. 0 when none of them
        is an anomaly, 1 when all of them are.
        """
        q = self.encoder(self._as_batch(keys))
        enc = self.encoded_keys()
        similarity = enc @ q.T
        values = self.V[similarity.argmax(dim=0)]
        top_ids = similarity.topk(self.k, dim=0).indices

        scores = []
        for i in range(q.shape[0]):
            ids = top_ids[:, i]
            labels = self.V[ids]
            n_anom = int(torch.sum(labels == ANOMALY))
            if n_anom == 0:
                scores.append(q.new_tensor(0.0))
                continue
            if n_anom == self.k:
                scores.append(q.new_tensor(1.0))
                continue
            log_pa = vmf_mixture_log_likelihood(q[i], enc[ids[labels == ANOMALY]], kappa)
            log_pn = vmf_mixture_log_likelihood(q[i], enc[ids[labels == NORMAL]], kappa)
            # pa / (pa + pn)
            scores.append(torch.sigmoid(log_pa - log_pn))
        return values, torch.stack(scores)

    # ---- training ----
    def nearest_positive_and_negative(self, k_largest_ids: torch.Tensor, v: int) -> Tuple[int, int]:
        """
        Closest key with label v and closest key with another label among
        `k_largest_ids` (ordered by similarity). Falls back to the first such
        key in the whole memory; raises IndexError if there is none.
        """
        labels = self.V[k_largest_ids]
        pos = torch.nonzero(labels == v).flatten()
        neg = torch.nonzero(labels != v).flatten()
        if len(pos) > 0:
            pos_id = int(k_largest_ids[pos[0]])
        else:
            pos_id = int(torch.nonzero(self.V == v).flatten()[0])
        if len(neg) > 0:
            neg_id = int(k_largest_ids[neg[0]])
        else:
            neg_id = int(torch.nonzero(self.V != v).flatten()[0])
        return pos_id, neg_id

    def margin_loss(self, q: torch.Tensor, encoded: torch.Tensor, pos_id: int, neg_id: int) -> torch.Tensor:
        """max(0, q.k_neg - q.k_pos + alpha) for an encoded query q."""
        return torch.clamp(torch.dot(q, encoded[neg_id]) - torch.dot(q, encoded[pos_id]) + self.alpha, min=0)

    def train_query(self, keys: torch.Tensor, labels) -> torch.Tensor:
        """
        Margin loss for keys with expected labels, then update the memory.

        All losses are computed against the memory as it was before the
        call. Returns the batch mean loss, differentiable w.r.t. the keys
        and the encoder.
        """
        keys = self._as_batch(keys)
        labels = torch.as_tensor(labels, device=self.V.device).reshape(-1)
        batch_size = keys.shape[0]

        normalized = self.encoder(keys)                # [B, D]
        encoded = self.encoded_keys()                  # [memory_size, D]
        with torch.no_grad():
            similarity = encoded @ normalized.T
        top_ids = similarity.topk(self.k, dim=0).indices   # [k, B]

        losses = []
        for i in range(batch_size):
            pos_id, neg_id = self.nearest_positive_and_negative(top_ids[:, i], int(labels[i]))
            losses.append(self.margin_loss(normalized[i], encoded, pos_id, neg_id))
        loss = torch.stack(losses).mean()

        touched = torch.zeros(self.memory_size, dtype=torch.bool, device=self.A.device)
        for i in range(batch_size):
            if i % 5 == 0:
                logger.debug("memory update %d/%d", i + 1, batch_size)
            slot = self._update(keys[i].detach(), int(labels[i]), int(top_ids[0, i]))
            touched[slot] = True
        self.increase_age(~touched)
        return loss

    def _update(self, q: torch.Tensor, v: int, nearest_id: int) -> int:
        """Write one key/label into memory and return the slot it landed in."""
        # anomaly slots are never moved
        if int(self.V[nearest_id]) != ANOMALY and int(self.V[nearest_id]) == v:
            with torch.no_grad():
                target = normalize(self.encoder(q.unsqueeze(0)) + self.encoder(self.M[nearest_id].unsqueeze(0)))
            # stored keys stay on the unit sphere
            self.M[nearest_id] = normalize(find_inverse(self.encoder, self.key_size, target).unsqueeze(0))[0]
            self.A[nearest_id] = 0
            return nearest_id

        jitter = torch.rand(self.memory_size, dtype=self.M.dtype, device=self.A.device)
        oldest = int(torch.argmax(self.A.to(self.M.dtype) + jitter))
        self.M[oldest] = normalize(q.unsqueeze(0))[0]
        self.V[oldest] = v
        self.A[oldest] = 0
        return oldest

    def increase_age(self, mask: torch.Tensor | None = None):
        if mask is None:
            self.A += 1
        else:
            self.A[mask] += 1
