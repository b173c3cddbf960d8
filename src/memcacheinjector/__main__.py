# Copyright (c) Twisted Matrix Laboratories.
# See LICENSE for details.

from memcacheinjector.scripts.injector import run

if __name__ == "__main__":
    run()
