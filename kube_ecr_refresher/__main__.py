import sys

from kube_ecr_refresher.main import main

sys.exit(main())
