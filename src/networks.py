# file: networks.py

import torch.nn as nn


def build_network(
    n_in: int,
    n_out: int,
    n_hidden: int,
    n_layers: int,
    activation: nn.Module = nn.ReLU(),
    last_activation: nn.Module | None = None,
) -> nn.Module:
    """
    Simple MLP with `n_layers` Linear layers.

    `last_activation=None` applies `activation` after the last layer too;
    pass nn.Identity() for a linear output.
    """
    if last_activation is None:
        last_activation = activation
    if n_layers == 1:
        return nn.Sequential(nn.Linear(n_in, n_out), last_activation)
    layers = [nn.Linear(n_in, n_hidden), activation]
    for _ in range(n_layers - 2):
        layers.extend([nn.Linear(n_hidden, n_hidden), activation])
    layers.extend([nn.Linear(n_hidden, n_out), last_activation])
    return nn.Sequential(*layers)
