"""
DevRunner Quality Assurance

Quality gates, the static code scanner and gate failure diagnostics.
"""
