"""
Matrix Primitive
================

Dense 2-D float container used by every layer of the engine.

Storage is a float64 NumPy array, but access goes through a small explicit
API: bounds-checked element access, element-wise and scalar arithmetic,
dot product, transpose, norms and the text format used by model files.

Initialization policies:
- He: uniform in +/- sqrt(6 / columns), used for ReLU layers
- Xavier: uniform in +/- sqrt(6 / (rows + columns)), used for sigmoid/softmax
"""

import numpy as np

from .exceptions import MatrixParseError, ShapeMismatchError


class Matrix:
    """
    Dense rows x columns matrix of floats.

    Dimensions are fixed at construction. Arithmetic never mutates its
    operands; every operation returns a new matrix.

    Example:
        >>> a = Matrix.from_array([[1, 2], [3, 4]])
        >>> b = Matrix.from_column([1, 1])
        >>> (a @ b).to_array().ravel().tolist()
        [3.0, 7.0]
    """

    __slots__ = ('_values',)

    def __init__(self, rows, columns):
        if rows < 0 or columns < 0:
            raise ValueError(f"Matrix dimensions must be non-negative, got {rows}x{columns}")
        self._values = np.zeros((rows, columns), dtype=np.float64)

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def _wrap(cls, array):
        """Wrap an existing 2-D float64 array without copying."""
        matrix = cls.__new__(cls)
        matrix._values = array
        return matrix

    @classmethod
    def from_array(cls, values):
        """Create a matrix from a nested sequence or 2-D array (copied)."""
        array = np.array(values, dtype=np.float64)
        if array.ndim != 2:
            raise ShapeMismatchError(f"Expected 2-D values, got {array.ndim}-D")
        return cls._wrap(array)

    @classmethod
    def from_column(cls, values):
        """Create a single-column matrix from a flat sequence."""
        array = np.array(values, dtype=np.float64).reshape(-1, 1)
        return cls._wrap(array)

    @classmethod
    def random(cls, rows, columns, low, high, rng=None):
        """Create a matrix filled with uniform values in [low, high)."""
        rng = rng if rng is not None else np.random.default_rng()
        return cls._wrap(rng.uniform(low, high, size=(rows, columns)))

    @classmethod
    def filled(cls, rows, columns, value):
        """Create a matrix with every cell set to ``value``."""
        return cls._wrap(np.full((rows, columns), value, dtype=np.float64))

    def initialize_he(self, rng=None):
        """Fill in place with He-uniform values, using columns as fan-in."""
        rng = rng if rng is not None else np.random.default_rng()
        limit = np.sqrt(6.0 / self.columns)
        self._values[...] = rng.uniform(-limit, limit, size=self.shape)
        return self

    def initialize_xavier(self, rng=None):
        """Fill in place with Xavier-uniform values."""
        rng = rng if rng is not None else np.random.default_rng()
        limit = np.sqrt(6.0 / (self.rows + self.columns))
        self._values[...] = rng.uniform(-limit, limit, size=self.shape)
        return self

    # ------------------------------------------------------------------
    # Shape and element access
    # ------------------------------------------------------------------

    @property
    def rows(self):
        return self._values.shape[0]

    @property
    def columns(self):
        return self._values.shape[1]

    @property
    def shape(self):
        return self._values.shape

    def _check_index(self, key):
        if not isinstance(key, tuple) or len(key) != 2:
            raise TypeError("Matrix indices must be a (row, column) pair")
        i, j = key
        if i < 0 or i >= self.rows or j < 0 or j >= self.columns:
            raise IndexError(
                f"Given indexes ([{i},{j}]) are out of range for Matrix of size: "
                f"{self.rows}x{self.columns}."
            )
        return i, j

    def __getitem__(self, key):
        i, j = self._check_index(key)
        return float(self._values[i, j])

    def __setitem__(self, key, value):
        i, j = self._check_index(key)
        self._values[i, j] = value

    def __iter__(self):
        """Iterate over values in row-major order."""
        return iter(self._values.ravel().tolist())

    def __len__(self):
        return self._values.size

    # ------------------------------------------------------------------
    # Arithmetic
    # ------------------------------------------------------------------

    def _check_same_shape(self, other):
        if self.shape != other.shape:
            raise ShapeMismatchError(
                f"Matrices must have the same dimensions, got "
                f"{self.rows}x{self.columns} and {other.rows}x{other.columns}"
            )

    def add(self, other):
        """Element-wise addition."""
        self._check_same_shape(other)
        return Matrix._wrap(self._values + other._values)

    def subtract(self, other):
        """Element-wise subtraction."""
        self._check_same_shape(other)
        return Matrix._wrap(self._values - other._values)

    def multiply(self, other):
        """Element-wise (Hadamard) product."""
        self._check_same_shape(other)
        return Matrix._wrap(self._values * other._values)

    def dot(self, other):
        """Matrix product; ``self.columns`` must equal ``other.rows``."""
        if self.columns != other.rows:
            raise ShapeMismatchError(
                "Number of columns in the first matrix must be equal to the number "
                f"of rows in the second matrix ({self.columns} != {other.rows})"
            )
        return Matrix._wrap(self._values @ other._values)

    def __add__(self, other):
        if isinstance(other, Matrix):
            return self.add(other)
        return Matrix._wrap(self._values + float(other))

    __radd__ = __add__

    def __sub__(self, other):
        if isinstance(other, Matrix):
            return self.subtract(other)
        return Matrix._wrap(self._values - float(other))

    def __mul__(self, other):
        if isinstance(other, Matrix):
            return self.multiply(other)
        return Matrix._wrap(self._values * float(other))

    __rmul__ = __mul__

    def __matmul__(self, other):
        return self.dot(other)

    def __neg__(self):
        return Matrix._wrap(-self._values)

    def transpose(self):
        return Matrix._wrap(self._values.T.copy())

    @property
    def T(self):
        return self.transpose()

    def apply(self, function):
        """Apply a vectorised function (array -> array) to every element."""
        return Matrix._wrap(np.asarray(function(self._values.copy()), dtype=np.float64))

    def clamp(self, low, high):
        return Matrix._wrap(np.clip(self._values, low, high))

    # ------------------------------------------------------------------
    # Reductions
    # ------------------------------------------------------------------

    def squared_norm(self):
        return float(np.sum(self._values * self._values))

    def norm(self):
        """Frobenius norm."""
        return float(np.sqrt(self.squared_norm()))

    def sum(self):
        return float(np.sum(self._values))

    def max(self):
        return float(np.max(self._values))

    def index_of_max(self):
        """Row index of the largest value of a single-column matrix."""
        if self.columns != 1:
            raise ShapeMismatchError("Matrix must have only one column")
        return int(np.argmax(self._values[:, 0]))

    def is_finite(self):
        return bool(np.all(np.isfinite(self._values)))

    # ------------------------------------------------------------------
    # Conversion
    # ------------------------------------------------------------------

    def copy(self):
        return Matrix._wrap(self._values.copy())

    def to_array(self):
        """Return a copy of the underlying values as a 2-D NumPy array."""
        return self._values.copy()

    def __eq__(self, other):
        if not isinstance(other, Matrix):
            return NotImplemented
        return self.shape == other.shape and bool(np.array_equal(self._values, other._values))

    __hash__ = None

    def allclose(self, other, atol=1e-8):
        return self.shape == other.shape and bool(np.allclose(self._values, other._values, atol=atol))

    def to_file_string(self):
        """Serialize as space-separated values, one row per line."""
        lines = []
        for row in self._values:
            lines.append(' '.join(repr(float(v)) for v in row) + ' ')
        return '\n'.join(lines) + '\n'

    @classmethod
    def parse(cls, text):
        """
        Parse the format produced by ``to_file_string``.

        Raises:
            MatrixParseError: on empty, non-numeric or ragged input.
        """
        rows = [line.split() for line in text.split('\n')]
        rows = [row for row in rows if row]
        if not rows:
            raise MatrixParseError("Matrix text is empty")

        width = len(rows[0])
        values = np.zeros((len(rows), width), dtype=np.float64)
        for i, row in enumerate(rows):
            if len(row) != width:
                raise MatrixParseError(
                    f"Row {i} has {len(row)} values, expected {width}"
                )
            for j, token in enumerate(row):
                try:
                    values[i, j] = float(token)
                except ValueError as exc:
                    raise MatrixParseError(f"Invalid value {token!r} at [{i},{j}]") from exc
        return cls._wrap(values)

    def __str__(self):
        lines = []
        for row in self._values:
            lines.append(' '.join(f"{v:5.2f}" for v in row))
        return '\n'.join(lines)

    def __repr__(self):
        return f"Matrix({self.rows}x{self.columns})"
