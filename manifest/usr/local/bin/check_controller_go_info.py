#!/usr/bin/env python3

from sys import argv, exit

from kfnotebooks import check_controller_go_info

exit(check_controller_go_info(argv[1:]))
