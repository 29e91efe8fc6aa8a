import sys

import atheris

with atheris.instrument_imports():
    from mira.utils import (
        clean_server_url,
        parse_bool,
        parse_float,
        parse_int,
        truncate_text,
        wrap_text,
    )


def TestOneInput(data: bytes) -> None:
    """Fuzz parsing and display helpers with arbitrary input."""
    value = data.decode("utf-8", errors="ignore")

    # Parsers with default fallbacks never raise
    parse_bool(value)
    parse_int(value, default=0)
    parse_float(value, default=0.0)
    clean_server_url(value)

    if len(data) > 0:
        width = (data[0] % 40) + 1
        wrapped = wrap_text(value, width)
        for line in wrapped.split("\n"):
            assert len(line) <= width, (width, line)
        limit = data[0] % 80
        truncated = truncate_text(value, limit)
        assert truncated == value or truncated.endswith(" ...")


def main() -> None:
    atheris.Setup(sys.argv, TestOneInput)
    atheris.Fuzz()


if __name__ == "__main__":
    main()
