"""
Similarity search for candidate genes against NCBI BLAST.

A query is submitted once, synchronously, through Biopython's
``NCBIWWW.qblast``; the XML reply is parsed lazily into
:class:`RankedHit` records in the order the service ranks them. Network,
service and parse errors surface as :class:`SearchUnavailable`. Retrying
is left to the caller.

Functions
---------
blast_search
    Submit a nucleotide sequence and iterate over ranked hits.
load_sequences
    Read gene sequences from a FASTA file.
sequence_for_gene
    Look up one gene's sequence.
"""
from __future__ import annotations

import http.client
import logging
import queue
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterator
from xml.parsers.expat import ExpatError

from Bio import SeqIO
from Bio.Blast import NCBIWWW, NCBIXML
from Bio.Data.IUPACData import ambiguous_dna_letters

from .exceptions import InputValidationError, SearchUnavailable

logger = logging.getLogger(__name__)

VALID_BASES = set(ambiguous_dna_letters) | {"U", "-"}


@dataclass(frozen=True)
class SearchParams:
    database: str = "nt"
    program: str = "blastn"
    hit_list_size: int = 50
    expect_value: float = 10.0
    low_complexity_filter: bool = True
    #: Seconds to wait for the service before giving up.
    timeout: float = 600.0


@dataclass(frozen=True)
class RankedHit:
    accession: str
    description: str
    #: Raw score of the best HSP.
    alignment_score: float
    e_value: float
    bit_score: float
    #: Percent identity of the best HSP.
    identity: float
    align_length: int


def clean_sequence(sequence) -> str:
    seq = "".join(str(sequence).split()).upper()
    if not seq:
        raise InputValidationError("Query sequence is empty.")
    invalid = set(seq) - VALID_BASES
    if invalid:
        raise InputValidationError(f"Query is not a nucleotide sequence; invalid characters: {sorted(invalid)}")
    return seq


def _submit(qblast: Callable, seq: str, params: SearchParams):
    return qblast(
        params.program,
        params.database,
        seq,
        expect=params.expect_value,
        hitlist_size=params.hit_list_size,
        filter="L" if params.low_complexity_filter else "F",
        format_type="XML",
    )


def _parse_hits(handle) -> Iterator[RankedHit]:
    try:
        for rec in NCBIXML.parse(handle):
            for aln in rec.alignments:
                if not aln.hsps:
                    continue
                hsp = aln.hsps[0]
                yield RankedHit(
                    accession=str(aln.accession),
                    description=str(aln.hit_def),
                    alignment_score=float(hsp.score),
                    e_value=float(hsp.expect),
                    bit_score=float(hsp.bits),
                    identity=round(hsp.identities / hsp.align_length * 100, 2) if hsp.align_length else 0.0,
                    align_length=int(hsp.align_length),
                )
    except (ValueError, ExpatError) as e:
        raise SearchUnavailable(f"Could not parse BLAST reply: {e}") from e
    finally:
        handle.close()


def _submit_in_background(qblast: Callable, seq: str, params: SearchParams) -> queue.Queue:
    """Start the request on a daemon thread; its (handle, error) pair arrives on the queue.

    A request still hanging at interpreter exit does not keep the process
    alive.
    """
    reply: queue.Queue = queue.Queue(maxsize=1)

    def run() -> None:
        try:
            reply.put((_submit(qblast, seq, params), None))
        except Exception as e:  # re-raised by the waiting caller
            reply.put((None, e))

    threading.Thread(target=run, name="blast-search", daemon=True).start()
    return reply


def blast_search(
    sequence,
    params: SearchParams = SearchParams(),
    qblast: Callable = NCBIWWW.qblast,
) -> Iterator[RankedHit]:
    """Run one BLAST search and return its hits, best first.

    The request is made before this function returns; the hits are parsed
    as the returned iterator is consumed. The iterator can be consumed once.

    Parameters
    ----------
    sequence : str or Bio.Seq.Seq
        Nucleotide query.
    params : SearchParams
        Database, program, hit list size, E-value threshold, low-complexity
        filter and timeout.
    qblast : callable
        Submission function with the signature of ``NCBIWWW.qblast``.

    Returns
    -------
    Iterator[RankedHit]

    Raises
    ------
    InputValidationError
        If the query is empty or not nucleotide.
    SearchUnavailable
        On network or service errors, or when ``params.timeout`` elapses.
    """
    seq = clean_sequence(sequence)
    logger.info(
        f"Submitting {len(seq)} bp to BLAST ({params.program} vs {params.database}, "
        f"hitlist={params.hit_list_size}, expect={params.expect_value})"
    )

    reply = _submit_in_background(qblast, seq, params)
    try:
        handle, error = reply.get(timeout=params.timeout)
    except queue.Empty as e:
        raise SearchUnavailable(f"BLAST search timed out after {params.timeout:g} s") from e
    if isinstance(error, (OSError, ValueError, RuntimeError, http.client.HTTPException)):
        raise SearchUnavailable(f"BLAST search failed: {error}") from error
    if error is not None:
        raise error

    logger.info("BLAST search complete")
    return _parse_hits(handle)


def load_sequences(fasta_path: str | Path) -> Dict[str, str]:
    """Map record id -> sequence for every record of a FASTA file."""
    fasta_path = Path(fasta_path)
    seqs = {rec.id: str(rec.seq) for rec in SeqIO.parse(fasta_path, "fasta")}
    logger.info(f"Loaded {len(seqs)} sequences from {fasta_path}")
    return seqs


def sequence_for_gene(sequences: Dict[str, str], gene_id: str) -> str:
    """Sequence of ``gene_id``; a record id with a version suffix also matches."""
    if gene_id in sequences:
        return sequences[gene_id]
    for rid, seq in sequences.items():
        if rid.split(".")[0] == gene_id.split(".")[0]:
            return seq
    raise KeyError(f"No sequence for gene '{gene_id}'")
