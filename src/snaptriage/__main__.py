"""Entry point for `python -m snaptriage`."""

from snaptriage.api.main import run


def main() -> None:
    run()


if __name__ == "__main__":
    main()
