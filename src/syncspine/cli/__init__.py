"""``syncspine`` command line (Typer + Rich).

Entry point: ``syncspine.cli.app:app``.
"""
