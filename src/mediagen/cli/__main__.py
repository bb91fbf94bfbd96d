"""CLI entry point for mediagen.cli module.

Enables execution via: python -m mediagen.cli generate image "a lighthouse"
"""

from mediagen.cli.generate import main

if __name__ == "__main__":
    main()
