import pytest

from errors import ConfigurationError
from models import FeedEntry
from policy import compile_kill_pattern, evaluate, html_to_text, load_kill_pattern

DAY = 24 * 60 * 60
NOW = 1_763_222_400.0


def test_missing_date_counts_as_now():
    decision = evaluate(FeedEntry(title="t"), None, now=NOW, max_age_days=16)

    assert decision.age_days == 0
    assert decision.accepted


def test_old_entry_is_stale():
    decision = evaluate(FeedEntry(published_at=NOW - 20 * DAY), None, now=NOW, max_age_days=16)

    assert decision.stale
    assert not decision.killed
    assert decision.age_days == pytest.approx(20)


def test_future_entry_is_stale_unless_host_exempt():
    entry = FeedEntry(published_at=NOW + DAY)

    assert evaluate(entry, None, now=NOW, feed_url="https://www.example.com/rss").stale
    assert not evaluate(entry, None, now=NOW, feed_url="https://www.example.com/rss",
                        exempt_sites=["www.example.com"]).stale


def test_kill_pattern_matches_title_case_insensitively():
    decision = evaluate(FeedEntry(title="Spam alert"), compile_kill_pattern(["spam"]), now=NOW)

    assert decision.killed
    assert decision.matched_text == "Spam"
    assert not decision.accepted


def test_kill_pattern_matches_author():
    decision = evaluate(FeedEntry(title="ok", author="Bot Account"), compile_kill_pattern(["^bot "]), now=NOW)

    assert decision.killed


def test_kill_pattern_matches_plain_text_of_body():
    entry = FeedEntry(title="ok", body_html="<p>buy <b>cheap</b> pills</p>")

    assert evaluate(entry, compile_kill_pattern(["cheap pills"]), now=NOW).killed
    assert not evaluate(entry, compile_kill_pattern(["<b>"]), now=NOW).killed


def test_html_to_text_blanks_non_ascii():
    assert html_to_text("<i>café</i> &amp; more") == "caf  & more"
    assert html_to_text("") == ""


def test_compile_kill_pattern_joins_lines():
    pattern = compile_kill_pattern(["# comment", "", "foo", "  bar  "])

    assert pattern.search("xBARx")
    assert pattern.search("FOO")
    assert not pattern.search("comment")


def test_compile_kill_pattern_empty_is_none():
    assert compile_kill_pattern(["# nothing", "   "]) is None


def test_invalid_kill_pattern_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        compile_kill_pattern(["(unclosed"])


def test_load_kill_pattern_missing_file(tmp_path):
    assert load_kill_pattern(str(tmp_path / ".killfile")) is None


def test_load_kill_pattern_from_file(tmp_path):
    killfile = tmp_path / ".killfile"
    killfile.write_text("# unwanted channels\nreaction video\n\n  # indented comment\nunboxing\n")

    pattern = load_kill_pattern(str(killfile))

    assert pattern.search("Best Unboxing ever")
    assert pattern.search("my REACTION VIDEO")
    assert not pattern.search("indented comment")
