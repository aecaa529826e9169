import sys

from vllm_eks.cli import main

sys.exit(main())
