#!/usr/bin/env python3

from sys import argv, exit

from kfnotebooks import make_detached_notebooks_repo

exit(make_detached_notebooks_repo(argv[1:]))
