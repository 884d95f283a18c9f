# Both grammars only tokenize a single line of a query. Every terminal is
# referenced from `start`, and OTHER has the lowest priority so that any
# input, however malformed, lexes without errors.

METRICS_TOKENS = r"""
start: _token*

_token: WS
    | LBRACE
    | RBRACE
    | LPAR
    | RPAR
    | COMMA
    | COLON
    | STRING
    | WORD
    | OTHER

WS.2: /\s+/
LBRACE.2: "{"
RBRACE.2: "}"
LPAR.2: "("
RPAR.2: ")"
COMMA.2: ","
COLON.2: ":"
STRING.2: /"(?:[^"\\\n]|\\.)*"?/
WORD.2: /(?:[^\s{}(),:"\\]|\\.)+/
OTHER.1: /./s
"""

LOGS_TOKENS = r"""
start: _token*

_token: WS
    | LPAR
    | RPAR
    | COLON
    | STRING
    | WORD
    | OTHER

WS.2: /\s+/
LPAR.2: "("
RPAR.2: ")"
COLON.2: ":"
STRING.2: /"(?:[^"\\\n]|\\.)*"?/
WORD.2: /(?:[^\s():"\\]|\\.)+/
OTHER.1: /./s
"""
