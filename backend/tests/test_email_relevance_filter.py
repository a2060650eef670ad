"""Unit tests for the keyword prefilter in front of the field extractor."""
import pytest

from careerpulse.email_relevance_filter import is_candidate


@pytest.mark.parametrize(
    "subject,body",
    [
        ("Thank you for your application", "We received it."),
        ("Interview invitation", ""),
        ("", "We would like to schedule a phone screen with you."),
        ("Your recent submission", "The recruiter will reach out about the role."),
        ("Update", "Thanks for applying to Acme!"),
    ],
)
def test_job_messages_pass(subject, body):
    assert is_candidate(subject, body) is True


@pytest.mark.parametrize(
    "subject,body",
    [
        ("Your order has shipped", "Track your package here."),
        ("Weekly digest", "Top stories from this week."),
        ("", ""),
    ],
)
def test_messages_without_job_keywords_rejected(subject, body):
    assert is_candidate(subject, body) is False


def test_marketing_mail_with_weak_job_language_rejected():
    # One job-ish word in the body is not enough when the mail is promotional.
    assert is_candidate("50% off everything", "Limited time offer. Unsubscribe here.") is False


def test_marketing_mail_with_job_subject_passes():
    assert is_candidate("Interview scheduled for Monday", "Unsubscribe from these notifications.") is True


def test_marketing_mail_with_strong_body_language_passes():
    body = "Your application for the position was received. Unsubscribe at any time."
    assert is_candidate("Acme Corp news", body) is True


def test_keyword_match_is_case_insensitive_and_accepts_suffixes():
    assert is_candidate("INTERVIEWS THIS WEEK", "") is True
    assert is_candidate("", "Our team is Recruiting engineers") is True


def test_keywords_match_whole_words_only():
    # "jobless" / "reapplication" style substrings should not count.
    assert is_candidate("Misapplyx", "jobless statistics") is False


def test_none_inputs_are_treated_as_empty():
    assert is_candidate(None, None) is False
