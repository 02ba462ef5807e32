"""
Mutation testing configuration for mutmut.

Mutates the anonymizer package and the shared utilities; skips lines whose
mutation cannot change behaviour.
"""


def pre_mutation(context):
    """
    Hook called before each mutation.

    Skips tests, package exports, log and report calls, and docstrings.
    """
    if 'tests/' in context.filename:
        context.skip = True

    if context.filename.endswith('__init__.py'):
        context.skip = True

    # CLI help texts and examples
    if context.filename.endswith('cli/parser.py'):
        context.skip = True

    line = context.current_source_line.strip()
    if line.startswith(('logger.', 'logging.', 'self.reporter.', 'reporter.')):
        context.skip = True

    if line.startswith('print('):
        context.skip = True

    if line == 'pass':
        context.skip = True

    if '"""' in line or "'''" in line:
        context.skip = True
