from ops_agent.memory.classify import (
    CANCELLED_NOTICE,
    ITERATION_LIMIT_WARNING,
    ErrorResponseClassifier,
)


def test_default_markers_flag_failures() -> None:
    classify = ErrorResponseClassifier()

    assert classify("❌ LLM call failed: boom")
    assert classify("dial tcp 10.0.0.1:443: connection refused")
    assert classify("查询失败: 超时")
    assert classify(ITERATION_LIMIT_WARNING.format(limit=10))
    assert classify(CANCELLED_NOTICE)


def test_ordinary_answers_pass() -> None:
    classify = ErrorResponseClassifier()

    assert not classify("There are 3 ECS instances in cn-hangzhou.")


def test_markers_are_pluggable() -> None:
    classify = ErrorResponseClassifier(markers=["BROKEN"]).with_markers("quota exceeded")

    assert classify("BROKEN pipe")
    assert classify("quota exceeded for project")
    assert not classify("❌ not in the custom list")
