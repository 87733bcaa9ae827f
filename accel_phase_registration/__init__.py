# -*- coding: utf-8 -*-
"""
Accelerated Phase-Based Volume Registration Package.

Registers a source 3D volume onto a reference 3D volume with a phase-based
affine solver followed by a phase-based non-linear (dense displacement)
solver. All dense per-voxel work runs as PyTorch kernels on a selectable
compute backend (host CPU, CUDA or MPS).

Main Functions
--------------
- register_volumes: Full registration (resample -> affine -> non-linear)
- RegistrationRun: Step-wise state machine for inspecting partial progress
- register_affine: Phase-based 12-parameter affine registration
- register_nonlinear: Phase-based displacement-field registration

Configuration
-------------
RegistrationConfig holds the run settings:

iterations_linear : int
    Affine iterations. Default 10.
iterations_nonlinear : int
    Non-linear iterations. Default 10.
z_crop_mm : float
    Millimetres removed from the low-z end of the source. Default 0.
smoothing_sigma : float
    Gaussian smoothing of the displacement field (voxels). This is the
    only regularizer of the deformation; higher values give smoother
    fields. Default 5.
compute_platform_index, compute_device_index : int
    Backend selection, see list_backends(). Default (0, 0), the host CPU.

Example:
    filters = default_filter_sets()
    result = register_volumes(
        source, reference, filters,
        source_voxel_size=(1, 1, 1), reference_voxel_size=(2, 2, 2),
    )
    print(result.affine_matrix_mm)

Filters and Backends
--------------------
- default_filter_sets: Lognormal quadrature filters for both solvers
- load_filter_sets / save_filter_sets: Filter assets (.mat / .npz)
- list_backends / open_backend: Enumerate and acquire compute devices

Utilities
---------
- load_volume / save_volume: NIfTI volumes via nibabel
- detect_folds: Jacobian determinant statistics of a displacement field
- shepp_logan_3d, textured_phantom: Synthetic test volumes
"""

__version__ = "0.1.0"

# Errors and value types
from .errors import (
    RegistrationError,
    ConfigurationError,
    LoadError,
    ShapeError,
    DeviceError,
    NumericError,
)
from .volume import Volume, as_volume

# Compute backends
from .backend import (
    ComputeBackend,
    Backend,
    list_backends,
    open_backend,
    get_default_device,
)

# Filters
from .filters import (
    CONVOLUTION_BOUNDARY,
    FilterSet,
    FilterSets,
    FilterBank,
    quadrature_filter,
    create_filter_set,
    default_linear_filters,
    default_nonlinear_filters,
    default_filter_sets,
    apply_filter_bank,
)

# Resampling and warping
from .resample import (
    crop_z,
    resample_volume,
    rescale_intensity,
    downsample_volume,
    prepare_source,
)
from .warp import (
    parameters_to_matrix,
    matrix_to_parameters,
    matrix_to_mm,
    apply_affine,
    apply_displacement,
)

# Solvers
from .linear import AffineResult, AffineRegistration, register_affine
from .nonlinear import NonlinearResult, NonlinearSolver, register_nonlinear

# Engine
from .engine import (
    RegistrationConfig,
    OutputLevel,
    RegistrationStage,
    RegistrationResult,
    RegistrationRun,
    register_volumes,
)

# Diagnostics
from .diffeomorphic import (
    JacobianStats,
    compute_jacobian_determinant,
    detect_folds,
    get_jacobian_determinant_map,
)

# I/O
from .io import (
    load_volume,
    load_volume_as,
    save_volume,
    load_filter_sets,
    save_filter_sets,
)

# Phantoms
from .phantoms import (
    shepp_logan_3d,
    textured_phantom,
    shift_volume,
    apply_random_deformation,
)

__all__ = [
    # Version
    "__version__",
    # Errors and value types
    "RegistrationError",
    "ConfigurationError",
    "LoadError",
    "ShapeError",
    "DeviceError",
    "NumericError",
    "Volume",
    "as_volume",
    # Backends
    "ComputeBackend",
    "Backend",
    "list_backends",
    "open_backend",
    "get_default_device",
    # Filters
    "CONVOLUTION_BOUNDARY",
    "FilterSet",
    "FilterSets",
    "FilterBank",
    "quadrature_filter",
    "create_filter_set",
    "default_linear_filters",
    "default_nonlinear_filters",
    "default_filter_sets",
    "apply_filter_bank",
    # Resampling and warping
    "crop_z",
    "resample_volume",
    "rescale_intensity",
    "downsample_volume",
    "prepare_source",
    "parameters_to_matrix",
    "matrix_to_parameters",
    "matrix_to_mm",
    "apply_affine",
    "apply_displacement",
    # Solvers
    "AffineResult",
    "AffineRegistration",
    "register_affine",
    "NonlinearResult",
    "NonlinearSolver",
    "register_nonlinear",
    # Engine
    "RegistrationConfig",
    "OutputLevel",
    "RegistrationStage",
    "RegistrationResult",
    "RegistrationRun",
    "register_volumes",
    # Diagnostics
    "JacobianStats",
    "compute_jacobian_determinant",
    "detect_folds",
    "get_jacobian_determinant_map",
    # I/O
    "load_volume",
    "load_volume_as",
    "save_volume",
    "load_filter_sets",
    "save_filter_sets",
    # Phantoms
    "shepp_logan_3d",
    "textured_phantom",
    "shift_volume",
    "apply_random_deformation",
]
