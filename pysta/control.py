"""
Control parameters for single trial model fitting.
"""

from typing import Optional, Tuple, Union

CRITERIA = ("AIC", "BIC")


class STAControl:
    """
    Control parameters for fitting single trial models.

    Parameters
    ----------
    nseg : int or tuple of int, optional
        Number of segments of the spatial P-spline term in the
        (column, row) direction. Passed untouched to the spatial
        engine. None uses the engine default.
    criterion : {"AIC", "BIC"}, default="AIC"
        Goodness-of-fit criterion used to select the best spatial
        residual structure.
    tolerance : float, default=1e-4
        Convergence tolerance for iterative engines: the spatial engine
        stops when the REML deviance changes by less than this amount
    max_iter : int, default=200
        Maximum number of iterations
    reml : bool, default=True
        Whether variance components are estimated by REML
    monitoring : bool, default=False
        Whether to print fitting progress
    """

    def __init__(
        self,
        nseg: Optional[Union[int, Tuple[int, int]]] = None,
        criterion: str = "AIC",
        tolerance: float = 1e-4,
        max_iter: int = 200,
        reml: bool = True,
        monitoring: bool = False
    ):
        if criterion not in CRITERIA:
            raise ValueError(f"criterion must be one of {CRITERIA}, got '{criterion}'")
        if tolerance <= 0:
            raise ValueError("tolerance must be positive")
        if max_iter < 1:
            raise ValueError("max_iter must be at least 1")
        self.nseg = nseg
        self.criterion = criterion
        self.tolerance = tolerance
        self.max_iter = max_iter
        self.reml = reml
        self.monitoring = monitoring

    def __repr__(self):
        return (f"STAControl(nseg={self.nseg}, criterion='{self.criterion}', "
                f"tolerance={self.tolerance}, max_iter={self.max_iter}, "
                f"monitoring={self.monitoring})")
