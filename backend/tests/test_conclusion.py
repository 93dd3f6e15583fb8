import pytest

from app.conversation.accumulator import TurnAccumulator
from app.conversation.conclusion import ConclusionDetector, conclusion_detector, greeting_for
from app.services.prompts import generate_system_instruction, is_interview_concluding


@pytest.mark.parametrize(
    "text",
    [
        "Thank you for your time today.",
        "We'll be in touch with next steps.",
        "Best of luck with your career!",
        "That concludes our interview for today.",
        "Well, that's all the questions I have.",
    ],
)
def test_english_conclusion_phrases(text):
    assert conclusion_detector.is_concluding(text, "en") is True


@pytest.mark.parametrize(
    "text",
    [
        "Благодаря ви за отделеното време.",
        "Ще се свържем с вас скоро.",
        "Довиждане и успех!",
    ],
)
def test_bulgarian_conclusion_phrases(text):
    assert conclusion_detector.is_concluding(text, "bg") is True


@pytest.mark.parametrize(
    "text",
    [
        None,
        "   ",
        "Tell me about your experience with Java.",
        "Can you explain how you would design a REST API for a booking system?",
    ],
)
def test_ordinary_turns_do_not_conclude(text):
    assert conclusion_detector.is_concluding(text, "en") is False


def test_unknown_language_falls_back_to_english():
    assert conclusion_detector.is_concluding("Thank you for your time.", "de") is True


def test_new_language_is_a_data_change():
    detector = ConclusionDetector(phrases={"en": [r"goodbye"], "de": [r"auf wiedersehen"]})
    assert detector.languages == ["de", "en"]
    assert detector.is_concluding("Auf Wiedersehen!", "de") is True


def test_greeting_by_language():
    assert greeting_for("en") == "Hello!"
    assert greeting_for("bg") == "Здравейте!"
    assert greeting_for("fr") == "Hello!"


def test_prompts_delegate_conclusion_check():
    assert is_interview_concluding("We will be in touch.", "en") is True
    assert is_interview_concluding("What is polymorphism?", "en") is False


def test_system_instruction_reflects_setup():
    prompt = generate_system_instruction(
        "Java Backend Developer",
        "Hard",
        "en",
        cv_text="Five years of Spring Boot",
        interviewer_name_en="Maria",
    )
    lowered = prompt.lower()
    assert "Java Backend Developer" in prompt
    assert "Maria" in prompt
    assert "Five years of Spring Boot" in prompt
    assert "probing" in lowered
    assert "api design" in lowered


def test_system_instruction_bulgarian_uses_bulgarian_name():
    prompt = generate_system_instruction("QA Engineer", "Easy", "bg")
    assert "Георги" in prompt
    assert "интервю" in prompt
    assert "friendly" in prompt.lower()
    assert "testing" in prompt.lower()


def test_accumulator_tracks_turns_and_transcript():
    acc = TurnAccumulator()
    acc.append_ai("Hello, ")
    acc.append_ai("tell me about yourself.")
    acc.append_user("I build APIs.")

    assert acc.current_turn() == "Hello, tell me about yourself."
    assert acc.complete_turn() == "Hello, tell me about yourself."
    assert acc.complete_turn() == ""

    acc.append_ai("Interesting, so")
    acc.discard_turn()
    assert acc.current_turn() == ""

    assert acc.line_count == 4
    assert acc.full_transcript() == (
        "\n[Interviewer]: Hello, "
        "\n[Interviewer]: tell me about yourself."
        "\n[Candidate]: I build APIs."
        "\n[Interviewer]: Interesting, so"
    )
