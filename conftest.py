# Ensure tests import modules from this service directory first, so
# `import webproxy.*` resolves to the checkout even without an install.
import os
import sys

SERVICE_ROOT = os.path.dirname(__file__)

if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)
