"""Allow running notifier as a module: python -m notifier <command>."""

from notifier.runner import main

if __name__ == "__main__":
    main()
