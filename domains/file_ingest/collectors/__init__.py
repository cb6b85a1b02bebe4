"""
File Ingestion Collectors

Long-running services that discover files and drive the pipeline:
- scanner.py - Inclusion filter, initial scan and project resolution
- folder_collector.py - Per-file pipeline, filesystem watcher and entry point
"""
