import sys

import atheris

with atheris.instrument_imports():
    from mira.assistant.transcript_store import TranscriptStoreError, parse_transcript
    from mira.assistant.wake_words import (
        contains_wake_word,
        ends_with_wake_word,
        normalize,
        strip_wake_word,
    )


def TestOneInput(data: bytes) -> None:
    """Fuzz wake phrase handling and transcript body parsing."""
    value = data.decode("utf-8", errors="ignore")

    normalized = normalize(value)
    assert normalize(normalized) == normalized
    contains_wake_word(normalized)
    if ends_with_wake_word(normalized):
        assert contains_wake_word(normalized)

    stripped = strip_wake_word(value)
    if value.strip():
        assert stripped, value

    try:
        parse_transcript(value)
    except TranscriptStoreError:
        pass  # Expected for malformed bodies


def main() -> None:
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
