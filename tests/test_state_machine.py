from conftest import make_payload
from partcall.session import Quote, initialize_call_state
from partcall.state_machine import BOT_SCREENING_MAX_ATTEMPTS, TRANSITIONS, StateMachine, Turn, should_ask_misc_costs
from partcall.states import Availability, CallStatus, Intent, NextAction, Node


def _at(state, node):
    state.current_node = node
    return state


def _quote(price, part_number="1R-0750", **kwargs):
    return Quote(part_number=part_number, price=price, **kwargs)


class TestStructure:
    def test_every_node_has_a_handler(self, machine):
        assert set(machine._handlers) == set(Node)

    def test_every_node_has_transitions(self):
        assert set(TRANSITIONS) == set(Node)

    def test_terminal_nodes_have_no_exits(self, machine):
        for node in Node:
            if node.is_terminal:
                assert machine.valid_transitions(node) == set()


class TestOpenCall:
    def test_greeting_spoken(self, machine, state):
        opened = machine.open_call(state)
        assert opened.current_node == Node.GREETING
        assert opened.last_ai_text().startswith("Hi, good morning! I'm calling from Acme Rentals.")
        assert state.conversation_history == []


class TestGreeting:
    def test_affirmative_asks_for_first_part(self, machine, state):
        new = machine.process(state, Turn(text="yes", intent=Intent.AFFIRMATIVE))
        assert new.current_node == Node.QUOTE_REQUEST
        line = new.last_ai_text()
        assert line.startswith("Great, thanks! The part number is... 1 R dash 0 7 5 0.")
        assert "a couple of fuel filters" in line
        assert line.endswith("Could you check the price and availability on that?")

    def test_process_does_not_mutate_input(self, machine, state):
        machine.process(state, Turn(text="yes", intent=Intent.AFFIRMATIVE))
        assert state.current_node == Node.GREETING
        assert state.conversation_history == []

    def test_hold_then_reintro(self, machine, state):
        held = machine.process(state, Turn(text="let me transfer you", intent=Intent.TRANSFER))
        assert held.current_node == Node.GREETING
        assert held.needs_transfer
        assert held.last_ai_text() == "Sure, I'll hold. Thank you."

        new = machine.process(held, Turn(text="parts, this is Dave", intent=Intent.AFFIRMATIVE))
        assert not new.needs_transfer
        lines = new.ai_lines_since(len(held.conversation_history))
        assert lines[0].startswith("Hi there! Thanks for taking my call.")
        assert new.current_node == Node.QUOTE_REQUEST

    def test_negative_ends_politely(self, machine, state):
        new = machine.process(state, Turn(text="not interested", intent=Intent.NEGATIVE))
        assert new.current_node == Node.POLITE_END
        assert new.status == CallStatus.COMPLETED
        assert new.outcome == "DECLINED"
        assert new.next_action == NextAction.EMAIL_FALLBACK

    def test_unavailable_goes_to_callback(self, machine, state):
        new = machine.process(state, Turn(text="parts guy's out today", intent=Intent.UNAVAILABLE))
        assert new.current_node == Node.CALLBACK
        assert new.outcome == "CALLBACK_REQUESTED"
        assert "QR-0042" in new.last_ai_text()

    def test_unknown_retries(self, machine, state):
        new = machine.process(state, Turn(text="mmm", intent=Intent.UNKNOWN))
        assert new.current_node == Node.GREETING
        assert "parts department" in new.last_ai_text()


class TestQuoteRequest:
    def test_quote_within_budget_confirms(self, machine, budget_state):
        state = _at(budget_state, Node.QUOTE_REQUEST)
        new = machine.process(state, Turn(
            text="$350 in stock", intent=Intent.PRICE, quotes=[_quote(350.0)],
        ))
        assert new.current_node == Node.CONFIRMATION
        assert new.status == CallStatus.COMPLETED
        assert new.next_action == NextAction.NONE
        assert "$350.00" in new.last_ai_text()

    def test_over_budget_starts_negotiation(self, machine, budget_state):
        state = _at(budget_state, Node.QUOTE_REQUEST)
        new = machine.process(state, Turn(
            text="$500", intent=Intent.PRICE, quotes=[_quote(500.0)],
        ))
        assert new.current_node == Node.NEGOTIATE
        assert new.negotiation_attempts == 0
        assert "$400.00" in new.last_ai_text()

    def test_no_records_unavailable_quote(self, machine, state):
        state = _at(state, Node.QUOTE_REQUEST)
        new = machine.process(state, Turn(text="no, we don't have that", intent=Intent.NEGATIVE))
        assert new.quotes[0].availability == Availability.UNAVAILABLE
        assert new.current_node == Node.CONFIRMATION
        assert new.next_action == NextAction.EMAIL_FALLBACK

    def test_repeat_spells_phonetically(self, machine, state):
        state = _at(state, Node.QUOTE_REQUEST)
        new = machine.process(state, Turn(text="say again?", intent=Intent.REPEAT))
        assert new.current_node == Node.QUOTE_REQUEST
        assert "R as in Romeo" in new.last_ai_text()

    def test_moves_to_next_part(self, machine):
        state = initialize_call_state(make_payload(parts=[
            {"partNumber": "1R-0750", "description": "fuel filter"},
            {"partNumber": "4P-2120", "description": "drive belt"},
        ]))
        state = _at(state, Node.QUOTE_REQUEST)
        new = machine.process(state, Turn(text="$45", intent=Intent.PRICE, quotes=[_quote(45.0)]))
        assert new.current_node == Node.QUOTE_REQUEST
        assert new.last_ai_text().startswith("Next one is... 4 P dash 2 1 2 0.")

    def test_voicemail_from_anywhere(self, machine, state):
        state = _at(state, Node.QUOTE_REQUEST)
        new = machine.process(state, Turn(intent=Intent.VOICEMAIL, voicemail_detected=True))
        assert new.current_node == Node.VOICEMAIL
        assert new.outcome == "VOICEMAIL_LEFT"
        assert "The quote reference is QR-0042." in new.last_ai_text()

    def test_human_request_escalates(self, machine, state):
        state = _at(state, Node.QUOTE_REQUEST)
        new = machine.process(state, Turn(text="am I talking to a robot?", intent=Intent.HUMAN_REQUEST))
        assert new.current_node == Node.HUMAN_ESCALATION
        assert new.status == CallStatus.ESCALATED
        assert new.needs_human_escalation


class TestNegotiate:
    def _negotiating(self, budget_state, price=500.0):
        state = _at(budget_state, Node.NEGOTIATE)
        state.quotes.append(_quote(price))
        return state

    def test_supplier_comes_down(self, machine, budget_state):
        state = self._negotiating(budget_state)
        new = machine.process(state, Turn(
            text="I can do 390", intent=Intent.PRICE, quotes=[_quote(390.0)],
        ))
        assert new.current_node == Node.CONFIRMATION
        assert new.quotes[0].price == 390.0

    def test_first_rejection_asks_again(self, machine, budget_state):
        state = self._negotiating(budget_state)
        new = machine.process(state, Turn(
            text="it's still 500", intent=Intent.PRICE, quotes=[_quote(500.0)],
        ))
        assert new.current_node == Node.NEGOTIATE
        assert new.negotiation_attempts == 1
        assert new.last_ai_text().startswith("I understand.")

    def test_exhausted_escalates(self, machine, budget_state):
        state = self._negotiating(budget_state)
        state.negotiation_attempts = 1
        new = machine.process(state, Turn(text="that's the best I can do", intent=Intent.NEGATIVE))
        assert new.current_node == Node.HUMAN_ESCALATION
        assert new.status == CallStatus.ESCALATED
        assert new.next_action == NextAction.HUMAN_FOLLOWUP
        assert new.negotiation_attempts == 2

    def test_affirmative_asks_for_number(self, machine, budget_state):
        state = self._negotiating(budget_state)
        new = machine.process(state, Turn(text="yeah maybe", intent=Intent.AFFIRMATIVE))
        assert new.current_node == Node.NEGOTIATE
        assert new.negotiation_attempts == 0
        assert new.last_ai_text().startswith("That's great, thank you. What price could you do")


class TestTerminalRouting:
    def test_forced_escalation(self, machine, state):
        state = _at(state, Node.QUOTE_REQUEST)
        new = machine.process(state, Turn(text="blah"), node=Node.HUMAN_ESCALATION)
        assert new.current_node == Node.HUMAN_ESCALATION
        assert new.status == CallStatus.ESCALATED
        assert "call you back within the hour" in new.last_ai_text()

    def test_finished_call_is_not_reprocessed(self, machine, state):
        done = machine.process(state, Turn(text="no", intent=Intent.NEGATIVE))
        again = machine.process(done, Turn(text="hello?"))
        assert again.conversation_history == done.conversation_history


class TestExitWithQuotes:
    def test_callback_keeps_quotes(self, machine, state):
        state = _at(state, Node.QUOTE_REQUEST)
        turn = Turn(
            text="$450 on that, email me the rest",
            intent=Intent.CALLBACK,
            quotes=[_quote(450.0)],
        )
        new = machine.process(state, turn)
        assert new.current_node == Node.CALLBACK
        assert new.outcome == "CALLBACK_REQUESTED"
        assert [q.price for q in new.quotes] == [450.0]

    def test_voicemail_ignores_quotes(self, machine, state):
        state = _at(state, Node.QUOTE_REQUEST)
        new = machine.process(state, Turn(intent=Intent.VOICEMAIL, quotes=[_quote(450.0)]))
        assert new.current_node == Node.VOICEMAIL
        assert new.quotes == []


class TestBotScreening:
    def test_call_screen_identifies_caller(self, machine, state):
        new = machine.process(state, Turn(
            text="The person you are calling is using a screening service. Please say your name.",
            intent=Intent.SCREENING,
        ))
        assert new.current_node == Node.BOT_SCREENING
        assert new.bot_screening_attempts == 1
        assert "Acme Rentals" in new.last_ai_text()
        assert "parts inquiry" in new.last_ai_text()

    def test_model_label_alone_counts(self, machine, state):
        new = machine.process(state, Turn(text="Who is calling?", intent=Intent.SCREENING))
        assert new.current_node == Node.BOT_SCREENING

    def test_captcha_answered(self, machine, state):
        screened = machine.process(state, Turn(text="Say your name", intent=Intent.SCREENING))
        new = machine.process(screened, Turn(text="What is 5 plus 2?", intent=Intent.SCREENING))
        assert new.current_node == Node.BOT_SCREENING
        assert new.last_ai_text() == "7"
        assert new.bot_screening_attempts == 2

    def test_urgency_check(self, machine, state):
        new = machine.process(state, Turn(text="Is this urgent?", intent=Intent.SCREENING))
        line = new.last_ai_text()
        assert "not urgent" in line
        assert "parts department" in line

    def test_spam_rejection_ends_call(self, machine, state):
        screened = machine.process(state, Turn(text="Say your name", intent=Intent.SCREENING))
        new = machine.process(screened, Turn(
            text="The person you are calling does not wish to speak with you. Please remove this number.",
            intent=Intent.SCREENING,
        ))
        assert new.current_node == Node.POLITE_END
        assert new.status == CallStatus.COMPLETED
        assert new.outcome == "BOT_REJECTED"
        assert new.next_action == NextAction.EMAIL_FALLBACK
        assert "Goodbye" in new.last_ai_text()

    def test_person_after_screener(self, machine, state):
        screened = machine.process(state, Turn(text="Say your name", intent=Intent.SCREENING))
        new = machine.process(screened, Turn(text="Parts, this is Dave", intent=Intent.AFFIRMATIVE))
        assert new.current_node == Node.QUOTE_REQUEST
        assert new.last_ai_text().startswith("Great, thanks! The part number is")

    def test_voicemail_after_screener(self, machine, state):
        screened = machine.process(state, Turn(text="Say your name", intent=Intent.SCREENING))
        new = machine.process(screened, Turn(text="", intent=Intent.VOICEMAIL, voicemail_detected=True))
        assert new.current_node == Node.VOICEMAIL

    def test_gives_up_after_max_attempts(self, machine, state):
        current = state
        for _ in range(BOT_SCREENING_MAX_ATTEMPTS):
            current = machine.process(current, Turn(text="Please state your name", intent=Intent.SCREENING))
        assert current.current_node == Node.BOT_SCREENING

        new = machine.process(current, Turn(text="Please state your name", intent=Intent.SCREENING))
        assert new.current_node == Node.POLITE_END
        assert new.outcome == "DECLINED"
        assert new.status == CallStatus.COMPLETED


class TestMiscCosts:
    def _backorder_turn(self):
        return Turn(
            text="$450, on backorder, two weeks",
            intent=Intent.PRICE,
            quotes=[_quote(450.0, availability=Availability.BACKORDER, lead_time_days=14)],
        )

    def test_asks_about_shipping_for_backorder(self, machine, state):
        state = _at(state, Node.QUOTE_REQUEST)
        state.has_misc_costs = True
        new = machine.process(state, self._backorder_turn())
        assert new.current_node == Node.MISC_COSTS_INQUIRY
        assert new.misc_costs_asked
        assert "shipping costs" in new.last_ai_text()

    def test_shipping_cost_recorded_then_confirms(self, machine, state):
        state = _at(state, Node.QUOTE_REQUEST)
        state.has_misc_costs = True
        asked = machine.process(state, self._backorder_turn())
        new = machine.process(asked, Turn(text="$35 for freight", intent=Intent.PRICE))
        assert new.current_node == Node.CONFIRMATION
        assert new.status == CallStatus.COMPLETED
        assert new.shipping_cost == 35.0
        assert new.shipping_notes == "$35 for freight"
        assert "plus $35.00 for shipping" in new.last_ai_text()

    def test_no_shipping_charge(self, machine, state):
        state = _at(state, Node.MISC_COSTS_INQUIRY)
        state.misc_costs_asked = True
        new = machine.process(state, Turn(text="No, shipping is free", intent=Intent.NEGATIVE))
        assert new.current_node == Node.CONFIRMATION
        assert new.shipping_cost is None

    def test_repeat_asks_again(self, machine, state):
        state = _at(state, Node.MISC_COSTS_INQUIRY)
        new = machine.process(state, Turn(text="sorry?", intent=Intent.REPEAT))
        assert new.current_node == Node.MISC_COSTS_INQUIRY
        assert "freight" in new.last_ai_text()

    def test_not_asked_without_flag(self, machine, state):
        state = _at(state, Node.QUOTE_REQUEST)
        new = machine.process(state, self._backorder_turn())
        assert new.current_node == Node.CONFIRMATION

    def test_not_asked_when_in_stock(self, state):
        state.has_misc_costs = True
        state.quotes.append(_quote(450.0))
        assert should_ask_misc_costs(state) is False

    def test_asked_only_once(self, state):
        state.has_misc_costs = True
        state.misc_costs_asked = True
        state.quotes.append(_quote(None, availability=Availability.UNAVAILABLE))
        assert should_ask_misc_costs(state) is False
