"""
Scripts for DoseLedger
Command-line entry points for operators and the external cron
"""
