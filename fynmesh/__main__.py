"""Allow running the kernel as a module: python -m fynmesh [unit ...]."""

from fynmesh.runner import main

if __name__ == "__main__":
    main()
