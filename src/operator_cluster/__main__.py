"""Allow running as: python -m operator_cluster"""

from operator_cluster.cli.main import main

if __name__ == "__main__":
    main()
