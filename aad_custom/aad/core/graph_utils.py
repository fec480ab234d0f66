"""
Computation graph utilities.
Print, summarize and export the structure of an AD tape.
"""

import numpy as np
from typing import Dict, List, Optional
from collections import Counter

from .tape import Tape, current_tape


def _op_name(label: Optional[str]) -> str:
    # "mul" -> "mul", "square [in]" -> "square [in]", None -> "leaf"
    return label if label else "leaf"


def get_graph_stats(tape: Optional[Tape] = None) -> Dict:
    """
    Collect graph statistics (without printing).

    Returns:
        dict with node/edge counts, fan-in/fan-out, edge kinds and a
        per-label operation histogram
    """
    tape = tape or current_tape()
    if not tape.nodes:
        return {
            'nodes': 0,
            'edges': 0,
            'callback_edges': 0,
            'ordering_edges': 0,
            'synthetic_nodes': 0,
            'max_fan_in': 0,
            'avg_fan_in': 0.0,
            'max_fan_out': 0,
            'avg_fan_out': 0.0,
            'operations': {},
        }

    nodes = list(tape.nodes.values())
    fan_ins = [len(node.in_edges) for node in nodes]
    fan_outs = [len(node.out_edges) for node in nodes]
    edges = list(tape.edges())

    op_counter = Counter(_op_name(node.label) for node in nodes)

    return {
        'nodes': len(nodes),
        'edges': len(edges),
        'callback_edges': sum(1 for e in edges if e.callback is not None),
        'ordering_edges': sum(1 for e in edges if e.is_ordering_only),
        'synthetic_nodes': sum(1 for node in nodes if node.is_synthetic),
        'max_fan_in': max(fan_ins),
        'avg_fan_in': float(np.mean(fan_ins)),
        'max_fan_out': max(fan_outs),
        'avg_fan_out': float(np.mean(fan_outs)),
        'operations': dict(op_counter),
    }


def print_graph_summary(tape: Optional[Tape] = None, detailed: bool = False) -> Dict:
    """
    Print a summary of the computation graph.

    Args:
        tape: tape to summarize (default: the active tape)
        detailed: also print the node list (graphs up to 100 nodes)

    Returns:
        the statistics dictionary from get_graph_stats()
    """
    tape = tape or current_tape()
    if not tape.nodes:
        print("Empty computation graph")
        return get_graph_stats(tape)

    stats = get_graph_stats(tape)
    n_nodes = stats['nodes']

    print("\n" + "="*70)
    print("COMPUTATION GRAPH SUMMARY")
    print("="*70)
    print(f"Total nodes:        {n_nodes:,}")
    print(f"Total edges:        {stats['edges']:,}")
    print(f"Callback edges:     {stats['callback_edges']:,}")
    print(f"Ordering edges:     {stats['ordering_edges']:,}")
    print(f"Synthetic nodes:    {stats['synthetic_nodes']:,}")
    print(f"Max fan-in:         {stats['max_fan_in']}")
    print(f"Avg fan-in:         {stats['avg_fan_in']:.2f}")
    print(f"Max fan-out:        {stats['max_fan_out']}")
    print(f"Avg fan-out:        {stats['avg_fan_out']:.2f}")
    print()
    print("Operation breakdown:")
    for op_type, count in Counter(stats['operations']).most_common(10):
        pct = 100.0 * count / n_nodes
        print(f"  {op_type:16s}: {count:6,} ({pct:5.1f}%)")

    if detailed and n_nodes <= 100:
        print()
        print("="*70)
        print("DETAILED NODE LIST")
        print("="*70)
        for index, node in sorted(tape.nodes.items()):
            parent_info = ", ".join(f"Node{e.source}" for e in node.in_edges)
            print(f"Node {index:3d}: {_op_name(node.label):16s} "
                  f"(refs={node.ref_count}) <- [{parent_info}]")

    print("="*70 + "\n")
    return stats


def _quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def to_graphviz(tape: Optional[Tape] = None, name: str = "ad_graph") -> str:
    """
    Export the tape as GraphViz DOT text.

    Synthetic aggregation nodes are drawn as boxes with their label verbatim,
    callback edges dashed and labelled with the operation name, ordering-only
    edges dotted.
    """
    tape = tape or current_tape()
    lines: List[str] = [f"digraph {name} {{", "  rankdir=LR;"]
    for index, node in sorted(tape.nodes.items()):
        label = f"{index}: {node.label}" if node.label else str(index)
        shape = "box" if node.is_synthetic else "ellipse"
        lines.append(f"  n{index} [label={_quote(label)}, shape={shape}];")
    for edge in tape.edges():
        if edge.callback is not None:
            attrs = f" [style=dashed, label={_quote(edge.callback.name())}]"
        elif edge.is_ordering_only:
            attrs = " [style=dotted]"
        else:
            attrs = ""
        lines.append(f"  n{edge.source} -> n{edge.target}{attrs};")
    lines.append("}")
    return "\n".join(lines)
