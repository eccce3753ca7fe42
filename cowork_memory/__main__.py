"""
Entry point for python -m cowork_memory
"""
from cowork_memory.cli import main

if __name__ == '__main__':
    main()
