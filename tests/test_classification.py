import pytest

from partcall.classification import classify_rules, detect_bot_screening, guard_voicemail, is_actionable
from partcall.states import Intent


class TestClassifyRules:
    @pytest.mark.parametrize("text,expected", [
        ("Hi, you've reached Valley Equipment, please leave a message after the tone", Intent.VOICEMAIL),
        ("Are you a robot?", Intent.HUMAN_REQUEST),
        ("Can you call back this afternoon?", Intent.CALLBACK),
        ("Just send me an email with the list", Intent.CALLBACK),
        ("Let me transfer you to the parts counter", Intent.TRANSFER),
        ("Hold on, let me check", Intent.HOLD),
        ("Can you repeat that part number?", Intent.REPEAT),
        ("huh?", Intent.REPEAT),
        ("It's $45 each", Intent.PRICE),
        ("Yeah, we have it for four fifty", Intent.PRICE),
        ("That part is discontinued", Intent.UNAVAILABLE),
        ("No thanks", Intent.NEGATIVE),
        ("That's the best I can do", Intent.NEGATIVE),
        ("Yeah, this is parts", Intent.AFFIRMATIVE),
        ("No problem, go ahead", Intent.AFFIRMATIVE),
        ("mmm", Intent.UNKNOWN),
        ("", Intent.UNKNOWN),
    ])
    def test_intents(self, text, expected):
        assert classify_rules(text) is expected

    def test_voicemail_beats_everything(self):
        assert classify_rules("Sorry we missed you, leave a message and we'll call you back") is Intent.VOICEMAIL

    def test_price_beats_affirmative(self):
        assert classify_rules("Yes, $120") is Intent.PRICE

    @pytest.mark.parametrize("text", [
        "It's $450 in stock, we can send it over tomorrow.",
        "$450, in stock, and I'll get it out to you in 3 days.",
        "Four fifty, let me get that boxed up for you.",
        "$120 each, I can send you a quote by email too.",
    ])
    def test_price_beats_delivery_and_callback_talk(self, text):
        assert classify_rules(text) is Intent.PRICE

    @pytest.mark.parametrize("text", [
        "Call me back at 3",
        "Can you call back after 2 pm?",
        "Try back by 4:30 today",
    ])
    def test_clock_times_stay_callbacks(self, text):
        assert classify_rules(text) is Intent.CALLBACK

    def test_screener_is_screening(self):
        assert classify_rules("Please state your name and the reason for your call") is Intent.SCREENING


class TestGuardVoicemail:
    def test_live_person_overrules(self):
        assert guard_voicemail(Intent.VOICEMAIL, "Yes, this is Mike in parts") is Intent.AFFIRMATIVE

    def test_real_greeting_kept(self):
        text = "Yes, you've reached parts, please leave a message"
        assert guard_voicemail(Intent.VOICEMAIL, text) is Intent.VOICEMAIL

    def test_other_intents_untouched(self):
        assert guard_voicemail(Intent.PRICE, "yes $40") is Intent.PRICE


def test_is_actionable():
    assert not is_actionable(Intent.UNKNOWN)
    assert is_actionable(Intent.HOLD)


class TestDetectBotScreening:
    @pytest.mark.parametrize("text,kind", [
        ("Hi, the person you are calling is using a screening service from Google", "call_screen"),
        ("Please say your name and why you're calling", "call_screen"),
        ("What is 5 plus 2?", "captcha"),
        ("To verify you're human, what is three times four?", "captcha"),
        ("Is this call urgent?", "urgency_check"),
        ("Is this urgent?", "urgency_check"),
        ("The person you are calling does not wish to speak with you. Please remove this number.", "spam_rejection"),
    ])
    def test_kinds(self, text, kind):
        assert detect_bot_screening(text) == kind

    @pytest.mark.parametrize("text", [
        "Parts department, this is Mike",
        "Yeah, what do you need?",
        "",
    ])
    def test_live_people(self, text):
        assert detect_bot_screening(text) is None
