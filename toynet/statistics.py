"""
Least-squares trend fitting used by the adaptive learning-rate controller.
"""

import numpy as np


def linear_regression(x, y=None):
    """
    Fit y = slope * x + intercept by ordinary least squares.

    Args:
        x: Sequence of x values, or of (x, y) pairs when ``y`` is omitted
        y: Sequence of y values

    Returns:
        (slope, intercept). When x has no variance the slope is 0 and the
        intercept is the mean of y.

    Formula:
        slope = (n * sum(xy) - sum(x) * sum(y)) / (n * sum(x^2) - sum(x)^2)
        intercept = (sum(y) - slope * sum(x)) / n
    """
    if y is None:
        points = np.asarray(x, dtype=np.float64).reshape(-1, 2)
        x, y = points[:, 0], points[:, 1]
    else:
        x = np.asarray(x, dtype=np.float64)
        y = np.asarray(y, dtype=np.float64)

    if x.shape != y.shape:
        raise ValueError("x and y must have the same length")
    n = len(x)
    if n == 0:
        raise ValueError("Cannot fit a line through zero points")

    sum_x, sum_y = np.sum(x), np.sum(y)
    sum_xy, sum_xx = np.sum(x * y), np.sum(x * x)

    denominator = n * sum_xx - sum_x ** 2
    if denominator == 0:
        return 0.0, float(sum_y / n)

    slope = (n * sum_xy - sum_x * sum_y) / denominator
    intercept = (sum_y - slope * sum_x) / n
    return float(slope), float(intercept)
