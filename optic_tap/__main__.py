"""Allow running as `python -m optic_tap`."""

from optic_tap.cli import main_entry

if __name__ == "__main__":
    main_entry()
