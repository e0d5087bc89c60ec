import pytest

from scan_analyst.agent.classifier import IntentClassifier, classify_by_pattern, parse_intent
from scan_analyst.errors import ClassificationUnavailableError
from scan_analyst.types import Intent


@pytest.mark.parametrize(
    "query",
    [
        "workflow wf-123 why did it fail?",
        "What happened to 3f2b8c1e-9a4d-4b7e-8c21-5d6e7f8a9b0c",
        "status of security-scan-payments-20260301-abc",
        "scan scan-77 failed, what went wrong",
    ],
)
def test_identifier_with_failure_vocabulary_is_workflow_result(query: str) -> None:
    assert classify_by_pattern(query) is Intent.WORKFLOW_RESULT


def test_identifier_with_duration_vocabulary_is_duration() -> None:
    assert classify_by_pattern("how long did workflow wf-9 take") is Intent.DURATION


def test_bare_identifier_is_a_workflow_lookup() -> None:
    assert classify_by_pattern("workflow wf-42") is Intent.WORKFLOW_RESULT


@pytest.mark.parametrize(
    "query",
    [
        "compare scan scan-001 and scan scan-002",
        "top cwes across workflow wf-9",
        "explain finding in scan scan-5",
        "what changed since the last green scan",
    ],
)
def test_identifier_wins_over_other_vocabulary(query: str) -> None:
    assert classify_by_pattern(query) is Intent.WORKFLOW_RESULT


def test_duration_vocabulary_alone_is_duration() -> None:
    assert classify_by_pattern("how many minutes do builds need") is Intent.DURATION


@pytest.mark.parametrize(
    ("query", "expected"),
    [
        ("what changed since the last successful build", Intent.CHANGES),
        ("compare the two latest builds", Intent.CHANGES),
        ("top cwes for team payments last 7 days", Intent.WEAKNESS_STATS),
        ("explain this vulnerability", Intent.EXPLAIN_FINDING),
        ("does our policy block deploys", Intent.POLICY),
        ("hello there", Intent.GENERAL),
    ],
)
def test_pattern_rules_in_priority_order(query: str, expected: Intent) -> None:
    assert classify_by_pattern(query) is expected


@pytest.mark.parametrize(
    ("response", "expected"),
    [
        ("WEAKNESS_STATS", Intent.WEAKNESS_STATS),
        ("  dependency_graph.\n", Intent.DEPENDENCY_GRAPH),
        ("SCAN_DURATION", Intent.DURATION),
        ("Category: POLICY", Intent.GENERAL),
        ("I think it's about weather", Intent.GENERAL),
        ("", Intent.GENERAL),
    ],
)
def test_parse_intent_maps_unknown_output_to_general(response: str, expected: Intent) -> None:
    assert parse_intent(response) is expected


def test_inference_path_is_used_when_available(make_inference) -> None:
    classifier = IntentClassifier(make_inference(lambda prompt: "DEPENDENCY_GRAPH"))

    assert classifier.classify("which components does project checkout ship?") is Intent.DEPENDENCY_GRAPH


def test_sentinel_response_raises_classification_unavailable(offline_inference) -> None:
    classifier = IntentClassifier(offline_inference)

    with pytest.raises(ClassificationUnavailableError):
        classifier.classify_with_inference("workflow wf-1 status")


def test_error_text_from_model_is_treated_as_unavailable(make_inference) -> None:
    classifier = IntentClassifier(make_inference(lambda prompt: "Error: model overloaded"))

    with pytest.raises(ClassificationUnavailableError):
        classifier.classify_with_inference("top cwes")


def test_classify_falls_back_to_patterns(offline_inference, caplog) -> None:
    classifier = IntentClassifier(offline_inference)

    with caplog.at_level("WARNING", logger="scan_analyst.agent.classifier"):
        intent = classifier.classify("workflow wf-123 why did it fail?")

    assert intent is Intent.WORKFLOW_RESULT
    assert "pattern rules chose WORKFLOW_RESULT" in caplog.text
