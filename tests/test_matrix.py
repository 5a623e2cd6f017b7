"""
Tests for the Matrix primitive.
"""

import numpy as np
import pytest
import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from toynet.matrix import Matrix
from toynet.exceptions import MatrixParseError, ShapeMismatchError, ToyNetError


class TestMatrixConstruction:

    def test_zeros(self):
        m = Matrix(3, 2)
        assert m.shape == (3, 2)
        assert (m.rows, m.columns) == (3, 2)
        assert m.sum() == 0.0
        assert len(m) == 6

    def test_negative_dimensions(self):
        with pytest.raises(ValueError):
            Matrix(-1, 2)

    def test_from_array_requires_2d(self):
        with pytest.raises(ShapeMismatchError):
            Matrix.from_array([1, 2, 3])

    def test_from_column(self):
        m = Matrix.from_column([1, 2, 3])
        assert m.shape == (3, 1)
        assert list(m) == [1.0, 2.0, 3.0]

    def test_from_array_copies(self):
        values = np.ones((2, 2))
        m = Matrix.from_array(values)
        values[0, 0] = 5.0
        assert m[0, 0] == 1.0

    def test_random_range(self):
        m = Matrix.random(20, 20, -0.5, 0.5, np.random.default_rng(0))
        values = m.to_array()
        assert values.min() >= -0.5 and values.max() < 0.5

    def test_he_limit(self):
        m = Matrix(50, 12).initialize_he(np.random.default_rng(0))
        assert np.abs(m.to_array()).max() <= np.sqrt(6 / 12)

    def test_xavier_limit(self):
        m = Matrix(50, 12).initialize_xavier(np.random.default_rng(0))
        assert np.abs(m.to_array()).max() <= np.sqrt(6 / 62)


class TestMatrixAccess:

    def test_get_set(self):
        m = Matrix(2, 2)
        m[1, 0] = 4.5
        assert m[1, 0] == 4.5

    @pytest.mark.parametrize('index', [(2, 0), (0, 2), (-1, 0)])
    def test_out_of_range(self, index):
        m = Matrix(2, 2)
        with pytest.raises(IndexError, match="out of range for Matrix of size: 2x2"):
            m[index]

    def test_out_of_range_message(self):
        with pytest.raises(IndexError) as info:
            Matrix(3, 4)[3, 1] = 1.0
        assert str(info.value) == "Given indexes ([3,1]) are out of range for Matrix of size: 3x4."


class TestMatrixArithmetic:

    def setup_method(self):
        self.a = Matrix.from_array([[1, 2], [3, 4]])
        self.b = Matrix.from_array([[5, 6], [7, 8]])

    def test_elementwise(self):
        assert (self.a + self.b).to_array().tolist() == [[6, 8], [10, 12]]
        assert (self.b - self.a).to_array().tolist() == [[4, 4], [4, 4]]
        assert (self.a * self.b).to_array().tolist() == [[5, 12], [21, 32]]

    def test_scalar(self):
        assert (self.a * 2).to_array().tolist() == [[2, 4], [6, 8]]
        assert (2 * self.a) == (self.a * 2)
        assert (self.a + 1).to_array().tolist() == [[2, 3], [4, 5]]
        assert (-self.a).sum() == -10

    def test_operands_not_mutated(self):
        before = self.a.copy()
        self.a + self.b
        self.a.multiply(self.b)
        assert self.a == before

    def test_elementwise_shape_mismatch(self):
        with pytest.raises(ShapeMismatchError):
            self.a.add(Matrix(2, 3))
        with pytest.raises(ShapeMismatchError):
            self.a.multiply(Matrix(3, 2))

    def test_dot(self):
        assert (self.a @ self.b).to_array().tolist() == [[19, 22], [43, 50]]

    @pytest.mark.parametrize('left, right, ok', [
        ((2, 3), (3, 4), True),
        ((2, 3), (2, 3), False),
        ((1, 5), (5, 1), True),
        ((4, 1), (4, 1), False),
    ])
    def test_dot_shape_rule(self, left, right, ok):
        a, b = Matrix(*left), Matrix(*right)
        if ok:
            assert a.dot(b).shape == (left[0], right[1])
        else:
            with pytest.raises(ShapeMismatchError):
                a.dot(b)

    def test_double_transpose(self):
        m = Matrix.random(3, 5, -1, 1, np.random.default_rng(0))
        assert m.transpose().shape == (5, 3)
        assert m.T.T == m

    def test_errors_share_base_class(self):
        with pytest.raises(ToyNetError):
            self.a.dot(Matrix(3, 3))


class TestMatrixReductions:

    def test_norms(self):
        m = Matrix.from_array([[3, 0], [0, 4]])
        assert m.squared_norm() == 25.0
        assert m.norm() == 5.0
        assert m.max() == 4.0

    def test_index_of_max(self):
        assert Matrix.from_column([0.1, 0.7, 0.2]).index_of_max() == 1
        # Ties resolve to the first index
        assert Matrix.from_column([0.5, 0.5]).index_of_max() == 0

    def test_index_of_max_single_column_only(self):
        with pytest.raises(ShapeMismatchError):
            Matrix(2, 2).index_of_max()

    def test_is_finite(self):
        m = Matrix(1, 2)
        assert m.is_finite()
        m[0, 1] = float('nan')
        assert not m.is_finite()


class TestMatrixText:

    def test_roundtrip_exact(self):
        m = Matrix.random(3, 4, -10, 10, np.random.default_rng(1))
        assert Matrix.parse(m.to_file_string()) == m

    def test_file_format(self):
        text = Matrix.from_array([[1, 2], [3, 4]]).to_file_string()
        assert text == "1.0 2.0 \n3.0 4.0 \n"

    def test_parse_tolerates_whitespace(self):
        m = Matrix.parse("\n 1  2\n3 4 \n\n")
        assert m.to_array().tolist() == [[1, 2], [3, 4]]

    @pytest.mark.parametrize('text', ["", "1 2\n3", "1 x\n2 3"])
    def test_parse_errors(self, text):
        with pytest.raises(MatrixParseError):
            Matrix.parse(text)

    def test_parse_error_is_value_error(self):
        with pytest.raises(ValueError):
            Matrix.parse("not numbers")
