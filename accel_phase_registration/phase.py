# -*- coding: utf-8 -*-
"""
Local phase primitives shared by the affine and non-linear solvers.

For a reference response q1 and a (warped) source response q2 of the same
quadrature filter:

    phase difference   dphi = arg(q1 * conj(q2))
    certainty          c    = |q1 * q2| * cos^2(dphi / 2)
    local frequency    f    = grad(phase) . n

If the reference equals the source displaced by d, i.e. q1(x) = q2(x + d),
then dphi ~ f (n . d). Both solvers estimate d from this relation by
certainty-weighted least squares, using the weights c f^2 (magnitude
squared of the responses times the squared local frequency).

The local frequency is estimated per axis from products of neighbouring
responses, q(x+1) conj(q(x)) + q(x) conj(q(x-1)), summed over both
responses, so it does not depend on the orientation convention of the
filters.

Constants
---------
MIN_RELATIVE_CERTAINTY : float
    Certainties below this fraction of the filter's maximum certainty are
    set to zero, so near-zero responses cannot dominate a solve.
"""

from __future__ import annotations

from typing import Tuple

import numpy as np
import torch
from numpy.typing import NDArray


MIN_RELATIVE_CERTAINTY = 1e-3


def phase_differences_and_certainties(
    q_ref: torch.Tensor,
    q_src: torch.Tensor,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Per-voxel phase differences and certainties.

    Parameters
    ----------
    q_ref, q_src : torch.Tensor
        Complex filter responses of shape (K, X, Y, Z).

    Returns
    -------
    phase_differences : torch.Tensor
        arg(q_ref * conj(q_src)) in (-pi, pi], shape (K, X, Y, Z).
    certainties : torch.Tensor
        |q_ref * q_src| * cos^2(dphi / 2), shape (K, X, Y, Z). Values below
        MIN_RELATIVE_CERTAINTY times the per-filter maximum are zeroed.
    """
    product = q_ref * q_src.conj()
    phase_differences = torch.angle(product)
    certainties = product.abs() * torch.cos(0.5 * phase_differences) ** 2

    floor = MIN_RELATIVE_CERTAINTY * certainties.flatten(1).amax(dim=1)
    certainties = torch.where(
        certainties >= floor.view(-1, 1, 1, 1),
        certainties,
        torch.zeros_like(certainties),
    )
    return phase_differences, certainties


def _neighbour_products(q: torch.Tensor, dim: int) -> torch.Tensor:
    # q(x+1) conj(q(x)) + q(x) conj(q(x-1)), zero outside the grid
    n = q.shape[dim]
    forward = q.narrow(dim, 1, n - 1) * q.narrow(dim, 0, n - 1).conj()
    zeros = torch.zeros_like(q.narrow(dim, 0, 1))
    extended = torch.cat([zeros, forward, zeros], dim=dim)
    return extended.narrow(dim, 1, n) + extended.narrow(dim, 0, n)


def phase_gradients(
    q_ref: torch.Tensor,
    q_src: torch.Tensor,
) -> torch.Tensor:
    """
    Local phase gradient along x, y and z for every filter.

    Parameters
    ----------
    q_ref, q_src : torch.Tensor
        Complex filter responses of shape (K, X, Y, Z).

    Returns
    -------
    torch.Tensor
        Phase gradients in radians/voxel, shape (K, 3, X, Y, Z).
    """
    gradients = []
    for dim in (1, 2, 3):
        total = _neighbour_products(q_ref, dim) + _neighbour_products(q_src, dim)
        gradients.append(torch.angle(total))
    return torch.stack(gradients, dim=1)


def directional_frequencies(
    q_ref: torch.Tensor,
    q_src: torch.Tensor,
    directions: NDArray[np.floating],
) -> torch.Tensor:
    """
    Local frequency of each filter along its own direction.

    Parameters
    ----------
    q_ref, q_src : torch.Tensor
        Complex filter responses of shape (K, X, Y, Z).
    directions : ndarray
        Unit filter directions of shape (K, 3).

    Returns
    -------
    torch.Tensor
        f_k = grad(phase_k) . n_k, shape (K, X, Y, Z).
    """
    gradients = phase_gradients(q_ref, q_src)
    n = torch.as_tensor(
        np.array(directions, dtype=np.float32), device=gradients.device,
    )
    return torch.einsum('kaxyz,ka->kxyz', gradients, n)


def interior_mask(
    shape: Tuple[int, int, int],
    margin: int,
    device: torch.device,
) -> torch.Tensor:
    """
    Float mask of shape (X, Y, Z): 1 inside, 0 within ``margin`` voxels of
    the border, where filter responses are affected by zero extension.
    """
    mask = torch.zeros(shape, device=device)
    X, Y, Z = shape
    if min(X, Y, Z) > 2 * margin:
        mask[margin:X - margin, margin:Y - margin, margin:Z - margin] = 1.0
    return mask
