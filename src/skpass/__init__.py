"""
SKPass: scoped sovereign credential store.

Every subtree encrypted to its own recipients. Rotate a key and every
affected secret follows. Push the ciphertext anywhere; the plaintext
never leaves the machines that are allowed to read it.

A smilinTux Open Source Project.
"""

import os

__version__ = "0.1.0"
__author__ = "smilinTux"

SKPASS_HOME = os.environ.get("SKPASS_HOME", "~/.skpass")
