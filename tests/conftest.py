"""Shared model builders for the test suite."""

import copy

import numpy as np
import onnx
import pytest
from onnx import TensorProto, helper, numpy_helper

from pipesplit import CutSpecification

BATCH, IN, HIDDEN1, HIDDEN2, OUT = 4, 3, 5, 4, 2


def make_chain_model() -> onnx.ModelProto:
    """A -> B -> C: ``A_out = Relu(X)``, ``B_out = MatMul(A_out, W)``, ``Y = Relu(B_out)``."""
    w = numpy_helper.from_array(np.arange(9, dtype=np.float32).reshape(3, 3) / 10, "W")
    graph = helper.make_graph(
        nodes=[
            helper.make_node("Relu", ["X"], ["A_out"], name="A"),
            helper.make_node("MatMul", ["A_out", "W"], ["B_out"], name="B"),
            helper.make_node("Relu", ["B_out"], ["Y"], name="C"),
        ],
        name="chain",
        inputs=[helper.make_tensor_value_info("X", TensorProto.FLOAT, [2, 3])],
        outputs=[helper.make_tensor_value_info("Y", TensorProto.FLOAT, [2, 3])],
        initializer=[w],
    )
    return helper.make_model(graph, opset_imports=[helper.make_opsetid("", 17)])


def make_chain_cut() -> CutSpecification:
    return CutSpecification.from_dict(
        {
            "stages": [
                {"fw": {"nodes": ["A"]}},
                {"fw": {"nodes": ["B", "C"], "sync_inputs": ["A_out"]}},
            ],
        },
    )


def make_skip_model() -> onnx.ModelProto:
    """``A = Relu(X)``, ``B = Neg(A)``, ``Y = B + A``: ``A`` skips the middle stage."""
    graph = helper.make_graph(
        nodes=[
            helper.make_node("Relu", ["X"], ["A"], name="relu"),
            helper.make_node("Neg", ["A"], ["B"], name="neg"),
            helper.make_node("Add", ["B", "A"], ["Y"], name="add"),
        ],
        name="skip",
        inputs=[helper.make_tensor_value_info("X", TensorProto.FLOAT, [2])],
        outputs=[helper.make_tensor_value_info("Y", TensorProto.FLOAT, [2])],
    )
    return helper.make_model(graph, opset_imports=[helper.make_opsetid("", 17)])


SKIP_CUT = {
    "stages": [
        {"fw": {"nodes": ["relu"], "sync_outputs": ["A"]}},
        {"fw": {"nodes": ["neg"], "sync_inputs": ["A"], "sync_outputs": ["B"]}},
        {"fw": {"nodes": ["add"], "sync_inputs": ["B", "A"]}},
    ],
}


def _forward_nodes() -> list[onnx.NodeProto]:
    return [
        helper.make_node("MatMul", ["X", "W1"], ["T1"]),
        helper.make_node("Add", ["T1", "B1"], ["T2"]),
        helper.make_node("Relu", ["T2"], ["T3"]),
        helper.make_node("MatMul", ["T3", "W2"], ["T4"]),
        helper.make_node("Add", ["T4", "B2"], ["T5"]),
        helper.make_node("Relu", ["T5"], ["T6"]),
        helper.make_node("MatMul", ["T6", "W3"], ["T7"]),
        helper.make_node("Add", ["T7", "B3"], ["predictions"]),
        helper.make_node("Sub", ["predictions", "labels"], ["diff"]),
        helper.make_node("Mul", ["diff", "diff"], ["diff_square"]),
        helper.make_node("ReduceSum", ["diff_square"], ["loss"], keepdims=0),
    ]


def _layer_gradient(layer: int, activation: str, upstream: str, weight_input: str) -> list[onnx.NodeProto]:
    """Gradient of ``relu(matmul(weight_input, W) + B)`` for one hidden layer."""
    return [
        helper.make_node("Greater", [activation, "zero"], [f"{activation}_mask"]),
        helper.make_node("Cast", [f"{activation}_mask"], [f"{activation}_relu_grad"], to=TensorProto.FLOAT),
        helper.make_node("Mul", [upstream, f"{activation}_relu_grad"], [f"{activation}_grad"]),
        helper.make_node("ReduceSum", [f"{activation}_grad", "axes0"], [f"B{layer}_grad"], keepdims=0),
        helper.make_node("Transpose", [weight_input], [f"{weight_input}_t"], perm=[1, 0]),
        helper.make_node("MatMul", [f"{weight_input}_t", f"{activation}_grad"], [f"W{layer}_grad"]),
    ]


def _backward_nodes() -> list[onnx.NodeProto]:
    stage2 = [
        helper.make_node("Mul", ["diff", "two"], ["predictions_grad"]),
        helper.make_node("ReduceSum", ["predictions_grad", "axes0"], ["B3_grad"], keepdims=0),
        helper.make_node("Transpose", ["T6"], ["T6_t"], perm=[1, 0]),
        helper.make_node("MatMul", ["T6_t", "predictions_grad"], ["W3_grad"]),
        helper.make_node("Transpose", ["W3"], ["W3_t"], perm=[1, 0]),
        helper.make_node("MatMul", ["predictions_grad", "W3_t"], ["T6_grad"]),
    ]
    stage1 = [
        *_layer_gradient(2, "T5", "T6_grad", "T3"),
        helper.make_node("Transpose", ["W2"], ["W2_t"], perm=[1, 0]),
        helper.make_node("MatMul", ["T5_grad", "W2_t"], ["T3_grad"]),
    ]
    stage0 = _layer_gradient(1, "T2", "T3_grad", "X")
    return stage2 + stage1 + stage0


def make_mlp_model(seed: int = 0) -> onnx.ModelProto:
    """Three-layer perceptron with a squared-error loss and hand-written gradient nodes."""
    rng = np.random.default_rng(seed)

    def weight(name: str, *shape: int) -> onnx.TensorProto:
        return numpy_helper.from_array(rng.standard_normal(shape).astype(np.float32), name)

    initializers = [
        weight("W1", IN, HIDDEN1),
        weight("B1", HIDDEN1),
        weight("W2", HIDDEN1, HIDDEN2),
        weight("B2", HIDDEN2),
        weight("W3", HIDDEN2, OUT),
        weight("B3", OUT),
        numpy_helper.from_array(np.array(2.0, dtype=np.float32), "two"),
        numpy_helper.from_array(np.array(0.0, dtype=np.float32), "zero"),
        numpy_helper.from_array(np.array([0], dtype=np.int64), "axes0"),
    ]
    outputs = [
        helper.make_tensor_value_info("loss", TensorProto.FLOAT, []),
        helper.make_tensor_value_info("predictions", TensorProto.FLOAT, [BATCH, OUT]),
        helper.make_tensor_value_info("W1_grad", TensorProto.FLOAT, [IN, HIDDEN1]),
        helper.make_tensor_value_info("B1_grad", TensorProto.FLOAT, [HIDDEN1]),
        helper.make_tensor_value_info("W2_grad", TensorProto.FLOAT, [HIDDEN1, HIDDEN2]),
        helper.make_tensor_value_info("B2_grad", TensorProto.FLOAT, [HIDDEN2]),
        helper.make_tensor_value_info("W3_grad", TensorProto.FLOAT, [HIDDEN2, OUT]),
        helper.make_tensor_value_info("B3_grad", TensorProto.FLOAT, [OUT]),
    ]
    graph = helper.make_graph(
        nodes=_forward_nodes() + _backward_nodes(),
        name="mlp",
        inputs=[
            helper.make_tensor_value_info("X", TensorProto.FLOAT, [BATCH, IN]),
            helper.make_tensor_value_info("labels", TensorProto.FLOAT, [BATCH, OUT]),
        ],
        outputs=outputs,
        initializer=initializers,
    )
    return helper.make_model(graph, opset_imports=[helper.make_opsetid("", 17)])


MLP_CUT = {
    "stages": [
        {
            "fw": {"nodes": ["T1", "T2", "T3"], "sync_inputs": ["X"], "sync_outputs": ["T3"]},
            "bw": {
                "nodes": ["T2_mask", "T2_relu_grad", "T2_grad", "B1_grad", "X_t", "W1_grad"],
                "sync_inputs": ["T3_grad"],
                "wait_depends": ["T3_sync"],
                "record_depends": ["B1_grad", "W1_grad"],
            },
        },
        {
            "fw": {"nodes": ["T4", "T5", "T6"], "sync_inputs": ["T3"], "sync_outputs": ["T6"]},
            "bw": {
                "nodes": ["T5_mask", "T5_relu_grad", "T5_grad", "B2_grad", "T3_t", "W2_grad", "W2_t", "T3_grad"],
                "sync_inputs": ["T6_grad"],
                "sync_outputs": ["T3_grad"],
            },
        },
        {
            "fw": {"nodes": ["T7", "predictions", "diff", "diff_square", "loss"], "sync_inputs": ["T6"]},
            "bw": {
                "nodes": ["predictions_grad", "B3_grad", "T6_t", "W3_grad", "W3_t", "T6_grad"],
                "sync_outputs": ["T6_grad"],
            },
        },
    ],
}


def make_mlp_cut() -> CutSpecification:
    return CutSpecification.from_dict(MLP_CUT)


def make_dependency_cut() -> CutSpecification:
    """The perceptron cut where the last stage orders its backward part on ``loss`` alone."""
    data = copy.deepcopy(MLP_CUT)
    data["stages"][2]["fw"]["record_depends"] = ["loss"]
    data["stages"][2]["bw"]["wait_depends"] = ["loss"]
    return CutSpecification.from_dict(data)


def make_labels_sync_cut() -> CutSpecification:
    """The perceptron cut where the last stage also receives the ``labels`` graph input as a sync input."""
    data = copy.deepcopy(MLP_CUT)
    data["stages"][2]["fw"]["sync_inputs"] = ["T6", "labels"]
    return CutSpecification.from_dict(data)


def make_mlp_feeds(num_microbatches: int, seed: int = 1) -> list[dict[str, np.ndarray]]:
    rng = np.random.default_rng(seed)
    return [
        {
            "X": rng.standard_normal((BATCH, IN)).astype(np.float32),
            "labels": rng.standard_normal((BATCH, OUT)).astype(np.float32),
        }
        for _ in range(num_microbatches)
    ]


@pytest.fixture
def chain_model() -> onnx.ModelProto:
    return make_chain_model()


@pytest.fixture
def chain_cut() -> CutSpecification:
    return make_chain_cut()


@pytest.fixture
def mlp_model() -> onnx.ModelProto:
    return make_mlp_model()


@pytest.fixture
def mlp_cut() -> CutSpecification:
    return make_mlp_cut()


@pytest.fixture
def skip_model() -> onnx.ModelProto:
    return make_skip_model()


@pytest.fixture
def skip_cut() -> CutSpecification:
    return CutSpecification.from_dict(SKIP_CUT)
