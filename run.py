#!/usr/bin/env python3
"""Backup runner (the cron entry point)"""
from vpsbackup.cli import main

if __name__ == '__main__':
    main()
