import sys


def run_cli() -> None:
    """
    Entry point to vmrange command.

    Import utils first, before CLI gets a chance to spawn a logger. Without
    vmrange.utils, we would not be able to intercept the exception below.
    """

    try:
        import vmrange.utils  # noqa: F401,I001,RUF100

        import vmrange.cli

        vmrange.cli.main()

    except ImportError as error:
        print("Error: vmrange package does not seem to be installed", file=sys.stderr)
        raise SystemExit(1) from error

    except Exception as error:
        try:
            vmrange.utils.show_exception(error)
            raise SystemExit(2) from error

        except Exception as nested_error:
            import traceback

            print(f"Error: failed while reporting exception: {nested_error}", file=sys.stderr)
            traceback.print_exc()

            raise SystemExit(2) from nested_error


if __name__ == "__main__":
    run_cli()
