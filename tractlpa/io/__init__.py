"""
Table I/O boundary: raw-count tables in (reader), result tables out (writer),
run options (manifest). No other module touches files.
"""
