"""Shared BDD step definitions for all feature files.

Steps live in this conftest.py so pytest-bdd can find them from every test
module in this directory. Steps whose text contains several quoted values use
``parsers.re`` with ``[^"]`` classes so one step cannot swallow another's text.
"""
import httpx
from pytest_bdd import given, parsers, then, when

from tests.fixtures.payloads import make_notification, make_verification_response


def _record(context, response):
    context["response"] = response
    context.setdefault("responses", []).append(response)


# ── Given ──────────────────────────────────────────────────────────────────────

@given(parsers.parse('the relay runs in "{mode}" delivery mode'))
def relay_mode(mode, relay):
    relay.configure(delivery_mode=mode)


@given("payment verification is disabled")
def verification_disabled(relay):
    relay.configure(verify_payments=False)


@given("the relay has no webhook secret configured")
def no_webhook_secret(relay):
    relay.configure(webhook_secret="")


@given(parsers.re(r'the processor answers for "(?P<tx_ref>[^"]+)" with data for "(?P<other>[^"]+)"$'))
def processor_answers_other_ref(tx_ref, other, relay):
    relay.processor.respond(tx_ref, make_verification_response(tx_ref=other))


@given(parsers.re(
    r'the processor answers for "(?P<tx_ref>[^"]+)" with outer status "(?P<outer>[^"]*)"'
    r' and data status "(?P<inner>[^"]*)"$'
))
def processor_answers_statuses(tx_ref, outer, inner, relay):
    relay.processor.respond(
        tx_ref, make_verification_response(tx_ref=tx_ref, status=outer, data_status=inner)
    )


@given(
    parsers.re(r'the processor answers for "(?P<tx_ref>[^"]+)" with HTTP (?P<code>\d+)$'),
    converters={"code": int},
)
def processor_answers_http(tx_ref, code, relay):
    relay.processor.respond(
        tx_ref, {"status": "failed", "message": "Invalid tx_ref", "data": None}, status_code=code
    )


@given("the processor is unreachable")
def processor_unreachable(relay):
    relay.processor.fail_with(httpx.ConnectError("Connection refused"))


@given("the consumer is unreachable")
def consumer_unreachable(relay):
    relay.consumer.fail_with(httpx.ConnectTimeout("Connect timed out"))


@given(parsers.parse("the consumer answers with {code:d} and body '{body}'"))
def consumer_answers(code, body, relay):
    relay.consumer.reply(code, body)


@given("the consumer answers with an HTML challenge page")
def consumer_answers_html(relay):
    relay.consumer.reply(
        200,
        "<html><body><script>document.cookie='__test=1';location.reload()</script></body></html>",
        headers={"Content-Type": "text/html"},
    )


@given(parsers.parse('a pending payment "{tx_ref}" exists'))
def pending_payment_exists(tx_ref, relay):
    response = relay.post_webhook(make_notification(tx_ref=tx_ref))
    assert response.status_code == 200, response.text
    assert relay.store.get(tx_ref) is not None


# ── When ───────────────────────────────────────────────────────────────────────

@when(parsers.re(r'I send a signed "(?P<status>[^"]*)" webhook for "(?P<tx_ref>[^"]+)"$'))
def send_signed_webhook(status, tx_ref, relay, context):
    _record(context, relay.post_webhook(make_notification(tx_ref=tx_ref, status=status)))


@when(parsers.re(r'I acknowledge "(?P<tx_ref>[^"]+)"$'))
def acknowledge(tx_ref, relay, context):
    _record(context, relay.mark_done(tx_ref))


@when("I poll for pending payments")
def poll(relay, context):
    _record(context, relay.get_pending())


# ── Then ───────────────────────────────────────────────────────────────────────

@then(parsers.parse("the response status should be {code:d}"))
def check_status_code(code, context):
    assert context["response"].status_code == code, (
        f"Expected {code}, got {context['response'].status_code}: "
        f"{context['response'].text}"
    )


@then(parsers.parse('the response status field should be "{value}"'))
def check_status_field(value, context):
    body = context["response"].json()
    assert body.get("status") == value, f"Expected status={value!r} in body: {body}"


@then(parsers.parse('the response error should be "{message}"'))
def check_error(message, context):
    body = context["response"].json()
    assert body.get("error") == message, f"Expected error={message!r} in body: {body}"


@then(parsers.parse("all responses should have status {code:d}"))
def all_responses_status(code, context):
    for resp in context.get("responses", []):
        assert resp.status_code == code, (
            f"Expected {code}, got {resp.status_code}: {resp.text}"
        )


@then(
    parsers.re(r"the processor should have been called (?P<n>\d+) times?$"),
    converters={"n": int},
)
def processor_called(n, relay):
    assert len(relay.processor.calls) == n, (
        f"Expected {n} verification calls, got {len(relay.processor.calls)}"
    )


@then(
    parsers.re(r"the consumer should have received (?P<n>\d+) requests?$"),
    converters={"n": int},
)
def consumer_received(n, relay):
    assert len(relay.consumer.requests) == n, (
        f"Expected {n} consumer requests, got {len(relay.consumer.requests)}"
    )


@then(parsers.parse('the pending queue should contain "{tx_ref}"'))
def queue_contains(tx_ref, relay):
    refs = [r.tx_ref for r in relay.store.list(unprocessed_only=True)]
    assert tx_ref in refs, f"{tx_ref!r} not in pending queue {refs}"


@then("the pending queue should be empty")
def queue_empty(relay):
    records = relay.store.list(unprocessed_only=True)
    assert records == [], f"Expected empty queue, found {[r.tx_ref for r in records]}"
