"""core/ -- Configuration snapshot and error taxonomy. Imports nothing from auth/ or phone/."""
