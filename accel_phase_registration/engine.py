# -*- coding: utf-8 -*-
"""
Registration engine: configuration, run state machine and entry point.

A registration run moves through a fixed sequence of states:

    RESAMPLE -> AFFINE_ITERATE(1..N) -> NONLINEAR_ITERATE(1..M) -> DONE
                        any failure -> FAILED(reason)

``RegistrationRun.step`` performs exactly one transition, so partial
progress (current affine parameters, current displacement field) can be
inspected between steps. ``register_volumes`` runs to completion.

The compute backend is opened on the first step and released when the run
reaches DONE or FAILED, or when the run is closed (``close()`` or a
``with`` block). A failed run raises its error; there is no partial
result.

Functions
---------
1. RegistrationConfig: Validated run configuration
2. RegistrationRun: Step-wise state machine
3. RegistrationResult: Immutable run output
4. register_volumes: Register a source volume onto a reference volume
"""

from __future__ import annotations

import enum
import time
from contextlib import ExitStack
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional, Sequence, Tuple, Union

import numpy as np
from numpy.typing import NDArray

from .backend import Backend, open_backend
from .diffeomorphic import detect_folds
from .errors import (
    ConfigurationError,
    DeviceError,
    RegistrationError,
)
from .filters import FilterSets
from .linear import VALID_SCALES, AffineRegistration
from .nonlinear import NonlinearSolver
from .resample import prepare_source
from .volume import Volume, as_volume
from .warp import matrix_to_mm


# =============================================================================
# Configuration
# =============================================================================

def _is_integer(value: Any) -> bool:
    return isinstance(value, (int, np.integer)) and not isinstance(value, bool)


@dataclass(frozen=True)
class RegistrationConfig:
    """
    Configuration of a registration run.

    Attributes
    ----------
    iterations_linear : int
        Affine iterations (per resolution level). Default 10.
    iterations_nonlinear : int
        Non-linear iterations. Default 10.
    z_crop_mm : float
        Millimetres removed from the low-z end of the source. Default 0.
    smoothing_sigma : float
        Gaussian smoothing of the displacement field, in voxels of the
        reference grid. Default 5.
    compute_platform_index, compute_device_index : int
        Backend selection, see ``backend.list_backends``. Default (0, 0),
        the host CPU.
    coarsest_scale : int
        Coarsest affine pyramid scale (1, 2, 4 or 8). Default 1.
    tensor_sigma : float
        Smoothing of the per-voxel non-linear systems, in voxels.
        Default 1.5.
    num_threads : int, optional
        Host lanes used during the run. Default None (torch setting).
    """
    iterations_linear: int = 10
    iterations_nonlinear: int = 10
    z_crop_mm: float = 0.0
    smoothing_sigma: float = 5.0
    compute_platform_index: int = 0
    compute_device_index: int = 0
    coarsest_scale: int = 1
    tensor_sigma: float = 1.5
    num_threads: Optional[int] = None

    def __post_init__(self):
        for name in ('iterations_linear', 'iterations_nonlinear'):
            value = getattr(self, name)
            if not _is_integer(value) or value < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")

        for name in ('compute_platform_index', 'compute_device_index'):
            value = getattr(self, name)
            if not _is_integer(value) or value < 0:
                raise ConfigurationError(f"{name} must be a non-negative integer, got {value!r}")

        if not np.isfinite(self.z_crop_mm) or self.z_crop_mm < 0:
            raise ConfigurationError(f"z_crop_mm must be >= 0, got {self.z_crop_mm!r}")

        for name in ('smoothing_sigma', 'tensor_sigma'):
            value = getattr(self, name)
            if not np.isfinite(value) or value <= 0:
                raise ConfigurationError(f"{name} must be > 0, got {value!r}")

        if self.coarsest_scale not in VALID_SCALES:
            raise ConfigurationError(
                f"coarsest_scale must be one of {VALID_SCALES}, got {self.coarsest_scale!r}"
            )

        if self.num_threads is not None and (
                not _is_integer(self.num_threads) or self.num_threads < 1):
            raise ConfigurationError(f"num_threads must be >= 1, got {self.num_threads!r}")


class OutputLevel(enum.IntEnum):
    """Which artifacts a run returns besides the non-linearly warped volume."""
    NONLINEAR = 0  # warped volume only
    LINEAR = 1     # + affine-warped volume and affine matrix
    FULL = 2       # + interpolated source, reference, displacement field


class RegistrationStage(enum.Enum):
    RESAMPLE = "resample"
    AFFINE_ITERATE = "affine"
    NONLINEAR_ITERATE = "nonlinear"
    DONE = "done"
    FAILED = "failed"


# =============================================================================
# Result
# =============================================================================

@dataclass(frozen=True)
class RegistrationResult:
    """
    Output of a registration run.

    All volumes live on the reference grid. ``affine_matrix`` is a 4x4
    homogeneous matrix in voxels of the reference grid (centred
    coordinates); the displacement components are in voxels as well.
    Fields above the requested output level are None.
    """
    aligned_nonlinear: NDArray[np.float32]
    voxel_size: Tuple[float, float, float]
    elapsed_seconds: float
    output_level: OutputLevel
    aligned_linear: Optional[NDArray[np.float32]] = None
    affine_matrix: Optional[NDArray[np.float64]] = None
    interpolated_source: Optional[NDArray[np.float32]] = None
    reference: Optional[NDArray[np.float32]] = None
    displacement_x: Optional[NDArray[np.float32]] = None
    displacement_y: Optional[NDArray[np.float32]] = None
    displacement_z: Optional[NDArray[np.float32]] = None
    info: Dict[str, Any] = field(default_factory=dict)

    @property
    def affine_matrix_mm(self) -> Optional[NDArray[np.float64]]:
        """The affine with its translation in millimetres."""
        if self.affine_matrix is None:
            return None
        return matrix_to_mm(self.affine_matrix, self.voxel_size)

    @property
    def displacement_mm(self) -> Optional[NDArray[np.float32]]:
        """Displacement field of shape (3, X, Y, Z) in millimetres."""
        if self.displacement_x is None:
            return None
        field_vox = np.stack([self.displacement_x, self.displacement_y, self.displacement_z])
        scale = np.asarray(self.voxel_size, dtype=np.float32).reshape(3, 1, 1, 1)
        return field_vox * scale

    @property
    def max_displacement_mm(self) -> Optional[float]:
        displacement = self.displacement_mm
        if displacement is None:
            return None
        return float(np.sqrt((displacement ** 2).sum(axis=0)).max())


# =============================================================================
# State Machine
# =============================================================================

class RegistrationRun:
    """
    Step-wise registration of a source volume onto a reference volume.

    Parameters
    ----------
    source : Volume or ndarray
        Source volume. Arrays need ``source_voxel_size``.
    reference : Volume or ndarray
        Reference volume. Arrays need ``reference_voxel_size``.
    filters : FilterSets
        Linear and non-linear filter sets.
    config : RegistrationConfig, optional
        Run configuration. Default ``RegistrationConfig()``.
    output_level : OutputLevel
        Artifacts to return. Default FULL.
    verbose : bool
        Print progress information. Default False.
    source_voxel_size, reference_voxel_size : sequence of float, optional
        Voxel sizes (x, y, z) in mm for array inputs.

    Raises
    ------
    ConfigurationError
        If a voxel size is missing or invalid, or the filters are not a
        FilterSets.

    Examples
    --------
    >>> run = RegistrationRun(source, reference, default_filter_sets())
    >>> while not run.finished:
    ...     run.step()
    ...     print(run.state, run.iteration, run.parameters[:3])
    >>> result = run.result

    A run abandoned part way releases its backend when closed:

    >>> with RegistrationRun(source, reference, default_filter_sets()) as run:
    ...     run.step()
    """

    def __init__(
        self,
        source: Union[Volume, NDArray[np.floating]],
        reference: Union[Volume, NDArray[np.floating]],
        filters: FilterSets,
        config: Optional[RegistrationConfig] = None,
        output_level: OutputLevel = OutputLevel.FULL,
        verbose: bool = False,
        source_voxel_size: Optional[Sequence[float]] = None,
        reference_voxel_size: Optional[Sequence[float]] = None,
    ):
        self.source = as_volume(source, source_voxel_size, "source")
        self.reference = as_volume(reference, reference_voxel_size, "reference")
        if not isinstance(filters, FilterSets):
            raise ConfigurationError(
                f"filters must be a FilterSets, got {type(filters).__name__}"
            )
        self.filters = filters
        self.config = config if config is not None else RegistrationConfig()
        if not isinstance(self.config, RegistrationConfig):
            raise ConfigurationError(
                f"config must be a RegistrationConfig, got {type(self.config).__name__}"
            )
        self.output_level = OutputLevel(output_level)
        self.verbose = verbose

        self.state = RegistrationStage.RESAMPLE
        self.iteration = 0
        self.error: Optional[RegistrationError] = None

        self._resources = ExitStack()
        self._backend: Optional[Backend] = None
        self._interpolated: Optional[Volume] = None
        self._affine: Optional[AffineRegistration] = None
        self._aligned_linear: Optional[NDArray[np.float32]] = None
        self._nonlinear: Optional[NonlinearSolver] = None
        self._nonlinear_history = []
        self._result: Optional[RegistrationResult] = None
        self._elapsed = 0.0

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    @property
    def finished(self) -> bool:
        return self.state in (RegistrationStage.DONE, RegistrationStage.FAILED)

    @property
    def parameters(self) -> NDArray[np.float64]:
        """Current 12 affine parameters (zeros before the affine stage)."""
        if self._affine is None:
            return np.zeros(12, dtype=np.float64)
        return self._affine.parameters

    @property
    def affine_matrix(self) -> NDArray[np.float64]:
        if self._affine is None:
            return np.eye(4)
        return self._affine.matrix.copy()

    @property
    def displacement(self) -> Optional[NDArray[np.float32]]:
        """Current displacement field (3, X, Y, Z), None before the non-linear stage."""
        if self._nonlinear is None:
            return None
        return self._nonlinear.displacement_numpy()

    @property
    def result(self) -> RegistrationResult:
        if self.state is RegistrationStage.FAILED:
            raise self.error
        if self._result is None:
            raise RuntimeError(f"Registration run is not finished (state {self.state.name})")
        return self._result

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def step(self) -> RegistrationStage:
        """
        Perform one state transition.

        Returns
        -------
        RegistrationStage
            The state after the transition.

        Raises
        ------
        RegistrationError
            If the transition fails; the run moves to FAILED and the error
            carries the stage that failed.
        """
        if self.finished:
            raise RuntimeError(f"Registration run already finished (state {self.state.name})")

        stage = self.state.value
        t0 = time.time()
        try:
            if self.state is RegistrationStage.RESAMPLE:
                self._resample()
            elif self.state is RegistrationStage.AFFINE_ITERATE:
                self._affine_step()
            else:
                self._nonlinear_step()
        except (ConfigurationError, DeviceError) as e:
            self._fail(e)
            raise
        except RegistrationError as e:
            self._fail(e.with_stage(stage))
            raise
        except RuntimeError as e:
            error = DeviceError(f"Compute backend failed during {stage}: {e}", stage=stage)
            self._fail(error)
            raise error from e
        except Exception as e:
            error = RegistrationError(
                f"{type(e).__name__} during {stage}: {e}", stage=stage,
            )
            self._fail(error)
            raise error from e
        except BaseException as e:
            # KeyboardInterrupt and friends propagate unchanged
            self._fail(RegistrationError(
                f"Interrupted during {stage} ({type(e).__name__})", stage=stage,
            ))
            raise
        finally:
            self._elapsed += time.time() - t0

        if self.state is RegistrationStage.DONE:
            self._result = replace(self._result, elapsed_seconds=self._elapsed)
            self._resources.close()
            if self.verbose:
                print(f"\nRegistration complete in {self._elapsed:.2f} s")
        return self.state

    def run(self) -> RegistrationResult:
        """Step until DONE and return the result."""
        while not self.finished:
            self.step()
        return self.result

    def close(self):
        """
        Release the compute backend.

        A run that has not finished moves to FAILED; further steps raise.
        """
        if not self.finished:
            self._fail(RegistrationError(
                f"Registration run closed before completion (state {self.state.name})",
                stage=self.state.value,
            ))
        self._resources.close()

    def __enter__(self) -> "RegistrationRun":
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        self.close()

    def _fail(self, error: RegistrationError):
        self.error = error
        self.state = RegistrationStage.FAILED
        self._resources.close()

    def _resample(self):
        config = self.config
        self._backend = self._resources.enter_context(open_backend(
            config.compute_platform_index,
            config.compute_device_index,
            config.num_threads,
        ))
        if self.verbose:
            print(f"Phase-based registration on {self._backend}")
            print(f"    Source: {self.source.shape} @ {self.source.voxel_size} mm")
            print(f"    Reference: {self.reference.shape} @ {self.reference.voxel_size} mm")

        self._interpolated = prepare_source(
            self.source, self.reference, config.z_crop_mm, self._backend,
        )
        self._affine = AffineRegistration(
            self._interpolated, self.reference, self.filters.linear, self._backend,
            iterations=config.iterations_linear,
            coarsest_scale=config.coarsest_scale,
            verbose=self.verbose,
        )
        if self.verbose:
            print(f"\n--- Affine registration ({self._affine.total_iterations} iterations) ---")
        self.state = RegistrationStage.AFFINE_ITERATE
        self.iteration = 0

    def _affine_step(self):
        self._affine.step()
        self.iteration += 1
        if not self._affine.done:
            return

        if self.output_level >= OutputLevel.LINEAR:
            self._aligned_linear = self._affine.aligned()
        self._nonlinear = NonlinearSolver(
            self._interpolated, self.reference, self.filters.nonlinear, self._backend,
            matrix=self._affine.matrix,
            sigma=self.config.smoothing_sigma,
            tensor_sigma=self.config.tensor_sigma,
        )
        if self.verbose:
            print(f"\n--- Non-linear registration ({self.config.iterations_nonlinear} iterations) ---")
        self.state = RegistrationStage.NONLINEAR_ITERATE
        self.iteration = 0

    def _nonlinear_step(self):
        max_update = self._nonlinear.step()
        self._nonlinear_history.append(max_update)
        self.iteration += 1
        if self.verbose:
            print(f"      Iter {self.iteration}: max update={max_update:.3f} vox")
        if self.iteration >= self.config.iterations_nonlinear:
            self._result = self._build_result()
            self.state = RegistrationStage.DONE

    def _build_result(self) -> RegistrationResult:
        displacement = self._nonlinear.displacement_numpy()
        matrix = self._affine.matrix.copy()
        voxel_size = self.reference.voxel_size

        info = {
            'backend': repr(self._backend),
            'affine_parameters': self._affine.parameters,
            'affine_history': list(self._affine.history),
            'nonlinear_history': list(self._nonlinear_history),
            'jacobian_stats': detect_folds(displacement).to_dict(),
        }
        fields = dict(
            aligned_nonlinear=self._nonlinear.aligned(),
            voxel_size=voxel_size,
            elapsed_seconds=self._elapsed,
            output_level=self.output_level,
            info=info,
        )
        if self.output_level >= OutputLevel.LINEAR:
            fields.update(aligned_linear=self._aligned_linear, affine_matrix=matrix)
        if self.output_level >= OutputLevel.FULL:
            fields.update(
                interpolated_source=np.array(self._interpolated.data),
                reference=np.array(self.reference.data),
                displacement_x=displacement[0].copy(),
                displacement_y=displacement[1].copy(),
                displacement_z=displacement[2].copy(),
            )
        return RegistrationResult(**fields)


# =============================================================================
# Entry Point
# =============================================================================

def register_volumes(
    source: Union[Volume, NDArray[np.floating]],
    reference: Union[Volume, NDArray[np.floating]],
    filters: FilterSets,
    config: Optional[RegistrationConfig] = None,
    output_level: OutputLevel = OutputLevel.FULL,
    verbose: bool = False,
    source_voxel_size: Optional[Sequence[float]] = None,
    reference_voxel_size: Optional[Sequence[float]] = None,
) -> RegistrationResult:
    """
    Register a source volume onto a reference volume.

    The source is cropped, resampled onto the reference grid and rescaled,
    then aligned with the phase-based affine solver followed by the
    phase-based non-linear solver.

    Parameters
    ----------
    source : Volume or ndarray
        Source (moving) volume indexed [x, y, z].
    reference : Volume or ndarray
        Reference (fixed) volume indexed [x, y, z].
    filters : FilterSets
        Linear and non-linear filter sets, e.g. ``default_filter_sets()``
        or ``io.load_filter_sets(path)``.
    config : RegistrationConfig, optional
        Run configuration. Default ``RegistrationConfig()``.
    output_level : OutputLevel
        Artifacts to return. Default FULL.
    verbose : bool
        Print progress information. Default False.
    source_voxel_size, reference_voxel_size : sequence of float, optional
        Voxel sizes (x, y, z) in mm, required for array inputs.

    Returns
    -------
    RegistrationResult
        Warped volumes, affine matrix, displacement field and timing.

    Raises
    ------
    ConfigurationError, ShapeError, DeviceError, NumericError
        The run is aborted; ``error.stage`` names the failing stage.
    RegistrationError
        Any other failure inside a stage, chained to the original exception.

    Examples
    --------
    >>> result = register_volumes(
    ...     source, reference, default_filter_sets(),
    ...     source_voxel_size=(2, 2, 2), reference_voxel_size=(2, 2, 2),
    ... )
    >>> result.affine_matrix_mm[:3, 3]  # translation in mm
    """
    run = RegistrationRun(
        source, reference, filters,
        config=config,
        output_level=output_level,
        verbose=verbose,
        source_voxel_size=source_voxel_size,
        reference_voxel_size=reference_voxel_size,
    )
    return run.run()
