"""
    Printable form of a procedure:
    the expression chain in forward order and the gradient
    chain in backward order, one line per expression.

        Expression 0: MULTIPLY: a * b = Node2
        Expression 0: MULTIPLY: da = dNode2 * b, db = dNode2 * a
"""

import sys
from typing import List, TextIO


def expression_line(expression) -> str:
    return f"Expression {expression.id}: {expression.name}: {expression.expression_text()}"


def gradient_line(expression) -> str:
    texts = [f"d{node.name} = {text}" for node, text in expression.gradient_texts()]
    body = ", ".join(texts) if texts else "no gradient"
    return f"Expression {expression.id}: {expression.name}: {body}"


def expression_chain_lines(procedure) -> List[str]:
    return [expression_line(expression) for expression in procedure.forward_chain()]


def gradient_chain_lines(procedure) -> List[str]:
    return [gradient_line(expression) for expression in procedure.backward_chain()]


def print_expression_chain(procedure, stream: TextIO = None):
    stream = stream if stream is not None else sys.stdout
    for line in expression_chain_lines(procedure):
        print(line, file=stream)


def print_gradient_chain(procedure, stream: TextIO = None):
    stream = stream if stream is not None else sys.stdout
    for line in gradient_chain_lines(procedure):
        print(line, file=stream)
