from crag_chat.agent.thread import _answer_prompt, _corrective_task
from crag_chat.obs.tracing import GroundednessEvaluator
from crag_chat.types import ManualChunk

_CHUNK = ManualChunk(chunk_id=3, product_id=1, page_number=4, text="Hold the power button for 5 seconds.")


def test_answer_prompt_restricts_to_manual_extracts() -> None:
    prompt = _answer_prompt("How do I reset it?", [_CHUNK])

    assert "using ONLY information from the following product manual extracts" in prompt
    assert "<manual_extract id='3'>Hold the power button for 5 seconds.</manual_extract>" in prompt
    for key in ('"ManualExtractId"', '"ManualQuote"', '"AnswerText"'):
        assert key in prompt
    assert "up to 10 words" in prompt


def test_corrective_task_carries_question_and_context() -> None:
    task = _corrective_task("How do I reset it?", [_CHUNK])

    assert "<user_question>\nHow do I reset it?\n</user_question>" in task
    assert "<manual_extract id='3'>" in task


def test_groundedness_evaluator_high_for_supported_answer() -> None:
    evaluator = GroundednessEvaluator(min_overlap=0.3)
    answer = "Hold the power button for 5 seconds to reset."
    context = ["To reset the kettle, hold the power button for 5 seconds."]

    assert evaluator.score(answer, context) >= 0.95


def test_groundedness_evaluator_zero_without_context() -> None:
    assert GroundednessEvaluator().score("Unsupported claim.", []) == 0.0
