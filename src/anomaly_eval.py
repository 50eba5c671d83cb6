# file: anomaly_eval.py

import numpy as np
import torch
from sklearn.metrics import roc_auc_score

from knn_memory import KNNMemory


def _to_numpy(a) -> np.ndarray:
    if torch.is_tensor(a):
        return a.detach().cpu().numpy()
    return np.asarray(a)


def anomaly_auc(labels, scores) -> float:
    """Area under the ROC curve of anomaly scores (higher = more anomalous) for labels in {0, 1}."""
    return float(roc_auc_score(_to_numpy(labels), _to_numpy(scores)))


@torch.no_grad()
def memory_anomaly_scores(memory: KNNMemory, keys: torch.Tensor, kappa: float | None = None) -> torch.Tensor:
    """Softmax-weight scores, or VMF-mixture scores when kappa is given."""
    if kappa is None:
        _, scores = memory.query(keys)
    else:
        _, scores = memory.probabilistic_query(keys, kappa)
    return scores
