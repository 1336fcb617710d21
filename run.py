#!/usr/bin/env python3
"""Development runner"""
import os

from backup_agent.cli import cli

if __name__ == '__main__':
    # Use development config for local testing
    os.environ.setdefault('BACKUP_AGENT_ENV', 'development')
    cli()
