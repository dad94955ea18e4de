"""Tests for the event pool, the sync operators and threaded pipeline execution."""

import threading

import numpy as np
import onnx
import pytest
from onnx import TensorProto, helper
from onnx.reference import ReferenceEvaluator

from conftest import make_dependency_cut, make_labels_sync_cut, make_mlp_feeds
from pipesplit import (
    NO_EVENT,
    CutSpecification,
    EventAbortedError,
    EventPool,
    EventTimeoutError,
    ScheduleError,
    build_schedule,
    make_sync_ops,
    run_pipeline,
    run_reference,
    split_model,
)
from pipesplit._naming import SYNC_DOMAIN
from pipesplit._runtime import stage_feeds


class TestEventPool:
    """Tests for EventPool."""

    def test_wait_after_record(self) -> None:
        pool = EventPool(timeout=1.0)
        pool.record(7, {"x": 1})

        assert pool.is_signalled(7)
        assert pool.wait(7) == {"x": 1}
        assert not pool.is_signalled(7)

    def test_no_event_never_blocks(self) -> None:
        pool = EventPool(timeout=0.01)
        pool.record(NO_EVENT)

        assert pool.wait(NO_EVENT) == {}
        assert pool.pending() == []

    def test_wait_times_out(self) -> None:
        pool = EventPool(timeout=0.01)

        with pytest.raises(EventTimeoutError, match="waiting for event 3") as exc_info:
            pool.wait(3)
        assert exc_info.value.token == 3
        assert isinstance(exc_info.value, TimeoutError)

    def test_wait_consumes_the_record(self) -> None:
        pool = EventPool(timeout=0.01)
        pool.record(1)
        pool.wait(1)

        with pytest.raises(EventTimeoutError):
            pool.wait(1)

    def test_wait_blocks_until_recorded(self) -> None:
        pool = EventPool(timeout=5.0)
        result: list[dict] = []
        waiter = threading.Thread(target=lambda: result.append(pool.wait(4)))
        waiter.start()

        pool.record(4, {"y": 2})
        waiter.join(timeout=5.0)

        assert result == [{"y": 2}]

    def test_pending_and_reset(self) -> None:
        pool = EventPool()
        pool.record(2)
        pool.record(1)

        assert pool.pending() == [1, 2]
        pool.reset()
        assert pool.pending() == []

    def test_abort_wakes_blocked_wait(self) -> None:
        pool = EventPool()
        errors: list[Exception] = []

        def wait_forever() -> None:
            try:
                pool.wait(4)
            except EventAbortedError as e:
                errors.append(e)

        waiter = threading.Thread(target=wait_forever)
        waiter.start()
        pool.abort()
        waiter.join(timeout=5.0)

        assert not waiter.is_alive()
        assert len(errors) == 1
        assert errors[0].token == 4

    def test_recorded_event_survives_abort(self) -> None:
        pool = EventPool()
        pool.record(3, {"x": 1})
        pool.abort()

        assert pool.wait(3) == {"x": 1}
        with pytest.raises(EventAbortedError, match="event 5"):
            pool.wait(5)

    def test_reset_clears_abort(self) -> None:
        pool = EventPool(timeout=0.01)
        pool.abort()
        pool.reset()

        with pytest.raises(EventTimeoutError):
            pool.wait(1)


def _sync_model() -> onnx.ModelProto:
    """record_data_0_fw publishes t as t_sync; wait_data_1_fw receives it."""
    graph = helper.make_graph(
        nodes=[
            helper.make_node("RecordEvent", ["record_data_0_fw", "t"], ["t_sync"], domain=SYNC_DOMAIN),
            helper.make_node("WaitEvent", ["wait_data_1_fw", "placeholder"], ["received"], domain=SYNC_DOMAIN),
        ],
        name="sync",
        inputs=[
            helper.make_tensor_value_info("record_data_0_fw", TensorProto.INT64, []),
            helper.make_tensor_value_info("wait_data_1_fw", TensorProto.INT64, []),
            helper.make_tensor_value_info("t", TensorProto.FLOAT, [2]),
            helper.make_tensor_value_info("placeholder", TensorProto.FLOAT, [2]),
        ],
        outputs=[
            helper.make_tensor_value_info("t_sync", TensorProto.FLOAT, [2]),
            helper.make_tensor_value_info("received", TensorProto.FLOAT, [2]),
        ],
    )
    return helper.make_model(
        graph,
        opset_imports=[helper.make_opsetid("", 17), helper.make_opsetid(SYNC_DOMAIN, 1)],
    )


def _data_wait_model() -> onnx.ModelProto:
    """wait_data_1_fw receives t_sync as t_recv and also depends on dep."""
    graph = helper.make_graph(
        nodes=[
            helper.make_node("WaitEvent", ["wait_data_1_fw", "t_sync", "dep_sync"], ["t_recv"], domain=SYNC_DOMAIN),
        ],
        name="data_wait",
        inputs=[
            helper.make_tensor_value_info("wait_data_1_fw", TensorProto.INT64, []),
            helper.make_tensor_value_info("t_sync", TensorProto.FLOAT, [2]),
            helper.make_tensor_value_info("dep_sync", TensorProto.FLOAT, [2]),
        ],
        outputs=[helper.make_tensor_value_info("t_recv", TensorProto.FLOAT, [2])],
    )
    return helper.make_model(
        graph,
        opset_imports=[helper.make_opsetid("", 17), helper.make_opsetid(SYNC_DOMAIN, 1)],
    )


def _data_wait_inputs(token: int) -> dict[str, np.ndarray]:
    return {
        "wait_data_1_fw": np.array(token, dtype=np.int64),
        "t_sync": np.full(2, 7.0, dtype=np.float32),
        "dep_sync": np.zeros(2, dtype=np.float32),
    }


class TestSyncOps:
    """Tests for the WaitEvent/RecordEvent reference operators."""

    def test_passthrough_without_events(self) -> None:
        pool = EventPool(timeout=0.01)
        evaluator = ReferenceEvaluator(_sync_model(), new_ops=make_sync_ops(pool))
        t = np.array([1.0, 2.0], dtype=np.float32)
        placeholder = np.zeros(2, dtype=np.float32)

        t_sync, received = evaluator.run(
            None,
            {
                "record_data_0_fw": np.array(NO_EVENT, dtype=np.int64),
                "wait_data_1_fw": np.array(NO_EVENT, dtype=np.int64),
                "t": t,
                "placeholder": placeholder,
            },
        )

        np.testing.assert_array_equal(t_sync, t)
        np.testing.assert_array_equal(received, placeholder)

    def test_record_leaves_payload_in_pool(self) -> None:
        pool = EventPool(timeout=0.01)
        evaluator = ReferenceEvaluator(_sync_model(), new_ops=make_sync_ops(pool))
        t = np.array([3.0, 4.0], dtype=np.float32)

        evaluator.run(
            None,
            {
                "record_data_0_fw": np.array(5, dtype=np.int64),
                "wait_data_1_fw": np.array(NO_EVENT, dtype=np.int64),
                "t": t,
                "placeholder": np.zeros(2, dtype=np.float32),
            },
        )

        payload = pool.wait(5)
        np.testing.assert_array_equal(payload["t_sync"], t)

    def test_wait_substitutes_payload_by_name(self) -> None:
        pool = EventPool(timeout=1.0)
        t = np.array([5.0, 6.0], dtype=np.float32)
        pool.record(9, {"placeholder": t})
        evaluator = ReferenceEvaluator(_sync_model(), new_ops=make_sync_ops(pool))

        _, received = evaluator.run(
            None,
            {
                "record_data_0_fw": np.array(NO_EVENT, dtype=np.int64),
                "wait_data_1_fw": np.array(9, dtype=np.int64),
                "t": np.zeros(2, dtype=np.float32),
                "placeholder": np.zeros(2, dtype=np.float32),
            },
        )

        np.testing.assert_array_equal(received, t)

    def test_data_wait_requires_its_tensors(self) -> None:
        pool = EventPool(timeout=1.0)
        pool.record(9, {})
        evaluator = ReferenceEvaluator(_data_wait_model(), new_ops=make_sync_ops(pool))

        with pytest.raises(ScheduleError, match="carries no value for t_sync"):
            evaluator.run(None, _data_wait_inputs(9))

    def test_unpaired_data_wait_fails(self) -> None:
        evaluator = ReferenceEvaluator(_data_wait_model(), new_ops=make_sync_ops(EventPool(timeout=0.01)))

        with pytest.raises(ScheduleError, match="t_sync"):
            evaluator.run(None, _data_wait_inputs(NO_EVENT))

    def test_directly_fed_tensor_passes_through(self) -> None:
        pool = EventPool(timeout=1.0)
        pool.record(9, {})
        evaluator = ReferenceEvaluator(_data_wait_model(), new_ops=make_sync_ops(pool, external={"t"}))

        (received,) = evaluator.run(None, _data_wait_inputs(9))

        np.testing.assert_array_equal(received, np.full(2, 7.0, dtype=np.float32))


class TestStageFeeds:
    """Tests for assembling the inputs of one stage invocation."""

    def test_feeds_for_middle_stage(self, mlp_model: onnx.ModelProto, mlp_cut: CutSpecification) -> None:
        result = split_model(mlp_model, mlp_cut)
        schedule = build_schedule(result.layouts(), 2)

        inputs = stage_feeds(result[1].model, schedule, 0, 1, make_mlp_feeds(1)[0])

        assert set(inputs) == set(result[1].input_names)
        assert inputs["wait_data_1_fw"] == schedule.events(0, 1)["wait_data_1_fw"]
        assert inputs["T3_sync"].dtype == np.float32

    def test_graph_inputs_come_from_feeds(self, mlp_model: onnx.ModelProto, mlp_cut: CutSpecification) -> None:
        result = split_model(mlp_model, mlp_cut)
        schedule = build_schedule(result.layouts(), 1)
        feeds = make_mlp_feeds(1)[0]

        inputs = stage_feeds(result[0].model, schedule, 0, 0, feeds)

        np.testing.assert_array_equal(inputs["X"], feeds["X"])

    def test_missing_input(self, mlp_model: onnx.ModelProto, mlp_cut: CutSpecification) -> None:
        result = split_model(mlp_model, mlp_cut)
        schedule = build_schedule(result.layouts(), 1)

        with pytest.raises(KeyError, match="labels"):
            stage_feeds(result[2].model, schedule, 0, 2, {"X": np.zeros((4, 3), dtype=np.float32)})


class TestRunPipeline:
    """End-to-end: split, schedule, run concurrently, compare with the unsplit model."""

    def test_matches_unsplit_model(self, mlp_model: onnx.ModelProto, mlp_cut: CutSpecification) -> None:
        num_microbatches = 6
        result = split_model(mlp_model, mlp_cut)
        schedule = build_schedule(result.layouts(), num_microbatches)
        feeds = make_mlp_feeds(num_microbatches)

        run = run_pipeline(result, schedule, feeds, timeout=30.0)

        assert run.num_microbatches == num_microbatches
        for mb in range(num_microbatches):
            expected = run_reference(mlp_model, feeds[mb])
            actual = run.outputs(mb)
            assert set(actual) == set(expected)
            for name, value in expected.items():
                np.testing.assert_allclose(actual[name], value, rtol=1e-5, atol=1e-6, err_msg=name)

    def test_unconsumed_pipeline_records_remain(
        self,
        mlp_model: onnx.ModelProto,
        mlp_cut: CutSpecification,
    ) -> None:
        result = split_model(mlp_model, mlp_cut)
        schedule = build_schedule(result.layouts(), 6)

        run = run_pipeline(result, schedule, make_mlp_feeds(6), timeout=30.0)

        # Warm-up records of stage 0 and the last record of stages 1 and 2
        assert run.pending_events == [100, 101, 211, 305]

    def test_single_microbatch(self, mlp_model: onnx.ModelProto, mlp_cut: CutSpecification) -> None:
        result = split_model(mlp_model, mlp_cut)
        schedule = build_schedule(result.layouts(), 1)
        feeds = make_mlp_feeds(1, seed=7)

        run = run_pipeline([artifact.model for artifact in result.artifacts], schedule, feeds)

        expected = run_reference(mlp_model, feeds[0])
        np.testing.assert_allclose(run.outputs(0)["loss"], expected["loss"], rtol=1e-5)

    def test_stage_count_mismatch(self, mlp_model: onnx.ModelProto, mlp_cut: CutSpecification) -> None:
        result = split_model(mlp_model, mlp_cut)
        schedule = build_schedule(result.layouts(), 1)

        with pytest.raises(ValueError, match="3 stage"):
            run_pipeline(result.artifacts[:2], schedule, make_mlp_feeds(1))

    def test_microbatch_count_mismatch(self, mlp_model: onnx.ModelProto, mlp_cut: CutSpecification) -> None:
        result = split_model(mlp_model, mlp_cut)
        schedule = build_schedule(result.layouts(), 2)

        with pytest.raises(ValueError, match="2 microbatch"):
            run_pipeline(result, schedule, make_mlp_feeds(3))

    def test_skip_connection_fails_instead_of_using_placeholder(
        self,
        skip_model: onnx.ModelProto,
        skip_cut: CutSpecification,
    ) -> None:
        result = split_model(skip_model, skip_cut)
        schedule = build_schedule(result.layouts(), 1)
        feeds = [{"X": np.array([1.0, 2.0], dtype=np.float32)}]

        with pytest.raises(ScheduleError, match="carries no value for A_sync"):
            run_pipeline(result, schedule, feeds, timeout=5.0)

    def test_graph_input_received_as_sync_input(self, mlp_model: onnx.ModelProto) -> None:
        result = split_model(mlp_model, make_labels_sync_cut())
        schedule = build_schedule(result.layouts(), 3)
        feeds = make_mlp_feeds(3, seed=3)

        run = run_pipeline(result, schedule, feeds, timeout=30.0)

        for mb in range(3):
            expected = run_reference(mlp_model, feeds[mb])
            np.testing.assert_allclose(run.outputs(mb)["loss"], expected["loss"], rtol=1e-5, atol=1e-6)

    def test_dependency_only_boundaries(self, mlp_model: onnx.ModelProto) -> None:
        num_microbatches = 4
        result = split_model(mlp_model, make_dependency_cut())
        schedule = build_schedule(result.layouts(), num_microbatches)
        feeds = make_mlp_feeds(num_microbatches, seed=5)

        assert schedule.issues() == []
        run = run_pipeline(result, schedule, feeds, timeout=30.0)

        for mb in range(num_microbatches):
            expected = run_reference(mlp_model, feeds[mb])
            actual = run.outputs(mb)
            assert set(actual) == set(expected)
            for name, value in expected.items():
                np.testing.assert_allclose(actual[name], value, rtol=1e-5, atol=1e-6, err_msg=name)

    def test_failed_invocation_does_not_hang(self, mlp_model: onnx.ModelProto, mlp_cut: CutSpecification) -> None:
        result = split_model(mlp_model, mlp_cut)
        schedule = build_schedule(result.layouts(), 2)
        feeds = make_mlp_feeds(2)
        # labels that cannot be subtracted from the predictions make the last stage fail
        for feed in feeds:
            feed["labels"] = np.zeros((3, 3), dtype=np.float32)

        # Without a timeout the stages waiting on the failed one would block forever
        with pytest.raises(ValueError):
            run_pipeline(result, schedule, feeds, timeout=None)

    def test_missing_feed_fails_before_any_invocation(
        self,
        mlp_model: onnx.ModelProto,
        mlp_cut: CutSpecification,
    ) -> None:
        result = split_model(mlp_model, mlp_cut)
        schedule = build_schedule(result.layouts(), 2)
        feeds = make_mlp_feeds(2)
        del feeds[1]["labels"]

        with pytest.raises(KeyError, match="labels"):
            run_pipeline(result, schedule, feeds, timeout=None)
