import numpy as np
import pytest

from nanoinfer.activation import (
    Activation,
    ActivationType,
    GeluAndMul,
    SiluAndMul,
    batch_silu,
    gelu,
    relu,
    silu,
    silu_and_mul,
)

X5 = np.array([-2.0, -1.0, 0.0, 1.0, 2.0], dtype=np.float32)


def test_silu_activation():
    values = silu(X5)
    assert abs(values[2]) < 1e-6
    assert values[3] == pytest.approx(0.7310586, abs=1e-5)
    assert values[4] == pytest.approx(1.7615942, abs=1e-5)
    assert values[3] < values[4]
    assert values.dtype == np.float32


def test_silu_large_inputs_are_finite():
    values = silu(np.array([-1000.0, 1000.0]))
    assert np.all(np.isfinite(values))
    assert values[1] == pytest.approx(1000.0)
    assert values[0] == pytest.approx(0.0, abs=1e-12)


def test_gelu_activation():
    values = gelu(X5)
    assert abs(values[2]) < 1e-6
    assert values[3] == pytest.approx(0.8412, abs=1e-3)
    assert values[4] == pytest.approx(1.9546, abs=1e-3)
    assert values[3] < values[4]


def test_relu_activation():
    values = relu(X5)
    assert values.tolist() == [0.0, 0.0, 0.0, 1.0, 2.0]


def test_silu_and_mul():
    x = np.array([[1.0, 2.0, 3.0, 0.5, 1.5, 2.5]], dtype=np.float32)
    result = SiluAndMul().forward(x)
    assert result.shape == (1, 3)
    expected = silu(np.array([[1.0, 2.0, 3.0]], dtype=np.float32)) * np.array(
        [[0.5, 1.5, 2.5]], dtype=np.float32
    )
    np.testing.assert_allclose(result, expected, atol=1e-6)


def test_gelu_and_mul():
    x = np.array([[1.0, 2.0, 3.0, 0.5, 1.5, 2.5]], dtype=np.float32)
    result = GeluAndMul().forward(x)
    assert result.shape == (1, 3)
    assert result[0, 0] == pytest.approx(0.8412 * 0.5, abs=1e-3)


def test_silu_and_mul_odd_dimension():
    with pytest.raises(ValueError, match="even"):
        SiluAndMul().forward(np.array([[1.0, 2.0, 3.0]]))


def test_gelu_and_mul_odd_dimension():
    with pytest.raises(ValueError, match="even"):
        GeluAndMul().forward(np.array([1.0, 2.0, 3.0]))


def test_activation_enum():
    x = np.array([1.0, 2.0, 3.0], dtype=np.float32)
    np.testing.assert_allclose(Activation(ActivationType.SILU).forward(x), silu(x), atol=1e-6)
    assert Activation(ActivationType.GELU).forward(x).shape == x.shape
    assert Activation(ActivationType.RELU).forward(x).tolist() == [1.0, 2.0, 3.0]
    fused = Activation(ActivationType.SILU_AND_MUL).forward(np.array([0.0, 4.0]))
    assert fused.tolist() == [0.0]


def test_activation_from_string():
    assert ActivationType.from_name("silu") is ActivationType.SILU
    assert ActivationType.from_name("swish") is ActivationType.SILU
    assert ActivationType.from_name("gelu") is ActivationType.GELU
    assert ActivationType.from_name("relu") is ActivationType.RELU
    assert ActivationType.from_name("silu_and_mul") is ActivationType.SILU_AND_MUL
    assert ActivationType.from_name("GeluAndMul") is ActivationType.GELU_AND_MUL
    with pytest.raises(ValueError, match="Unknown activation"):
        ActivationType.from_name("invalid")


def test_activation_accepts_name():
    assert Activation("ReLU").activation_type is ActivationType.RELU


def test_silu_and_mul_function_matches_class():
    x = np.array([[1.0, -2.0, 0.5, 3.0]])
    np.testing.assert_allclose(silu_and_mul(x), SiluAndMul().forward(x))


def test_batch_silu():
    results = batch_silu([np.array([1.0, 2.0]), np.array([3.0, 4.0])])
    assert len(results) == 2
    assert results[0].shape == (2,)
    assert results[1].shape == (2,)
    np.testing.assert_allclose(results[0], silu(np.array([1.0, 2.0])))


def test_integer_input_is_promoted():
    values = silu(np.array([0, 1]))
    assert values[1] == pytest.approx(0.7310586, abs=1e-6)