"""
Triangulation helpers for SPDE fields.
"""
from typing import Tuple

import numpy as np
from scipy import sparse
from scipy.spatial import Delaunay

from laplace_gmrf.exceptions import StructuralError


def triangulate(points) -> Tuple[np.ndarray, np.ndarray]:
    """
    Delaunay triangulation of a 2-D point set.

    Args:
        points: Coordinates (n_points, 2); become the mesh vertices

    Returns:
        vertices: (n_points, 2) float array
        triangles: (n_triangles, 3) vertex indices

    Example:
        >>> vertices, triangles = triangulate(np.random.rand(50, 2))
        >>> spde = build_spde_structure(vertices, triangles)
    """
    vertices = np.asarray(points, dtype=np.float64)
    if vertices.ndim != 2 or vertices.shape[1] != 2 or len(vertices) < 3:
        raise StructuralError(f"need at least 3 points of shape (n, 2), got {vertices.shape}")
    tri = Delaunay(vertices)
    return vertices, tri.simplices.astype(np.int64)


def regular_mesh(
    nx: int,
    ny: int,
    xlim: Tuple[float, float] = (0.0, 1.0),
    ylim: Tuple[float, float] = (0.0, 1.0)
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Regular grid mesh, every cell split into two triangles.

    Vertex (i, j) (column i, row j) has index j * nx + i.

    Args:
        nx: Number of vertices along x (>= 2)
        ny: Number of vertices along y (>= 2)
        xlim: Extent along x
        ylim: Extent along y

    Returns:
        vertices: (nx * ny, 2)
        triangles: (2 (nx-1)(ny-1), 3)
    """
    if nx < 2 or ny < 2:
        raise StructuralError(f"a regular mesh needs nx, ny >= 2, got ({nx}, {ny})")
    xs = np.linspace(xlim[0], xlim[1], nx)
    ys = np.linspace(ylim[0], ylim[1], ny)
    gx, gy = np.meshgrid(xs, ys)
    vertices = np.column_stack([gx.ravel(), gy.ravel()])

    i, j = np.meshgrid(np.arange(nx - 1), np.arange(ny - 1))
    lower_left = (j * nx + i).ravel()
    lower_right = lower_left + 1
    upper_left = lower_left + nx
    upper_right = upper_left + 1
    triangles = np.concatenate([
        np.column_stack([lower_left, lower_right, upper_right]),
        np.column_stack([lower_left, upper_right, upper_left]),
    ])
    return vertices, triangles.astype(np.int64)


def projector_matrix(
    vertices,
    triangles,
    points,
    tol: float = 1e-10,
    chunk_size: int = 1024
) -> sparse.csr_matrix:
    """
    Barycentric interpolation matrix from mesh vertices to arbitrary points.

    Row k holds the barycentric weights of point k in its containing
    triangle, so every row sums to one and has at most three nonzeros.

    Args:
        vertices: Mesh vertices (n_vertices, 2)
        triangles: Mesh triangles (n_triangles, 3)
        points: Observation locations (n_points, 2)
        tol: Slack on the barycentric coordinates for points on edges
        chunk_size: Points processed per vectorized batch

    Returns:
        A: (n_points, n_vertices) sparse matrix

    Raises:
        StructuralError: If a point lies outside the mesh.

    Example:
        >>> A = projector_matrix(vertices, triangles, coords)
        >>> link = LinkMap(A, convention='unscaled')
    """
    vertices = np.asarray(vertices, dtype=np.float64)
    triangles = np.asarray(triangles, dtype=np.int64)
    points = np.atleast_2d(np.asarray(points, dtype=np.float64))
    if points.shape[1] != 2:
        raise StructuralError(f"points must have shape (n, 2), got {points.shape}")

    p0 = vertices[triangles[:, 0]]
    e1 = vertices[triangles[:, 1]] - p0
    e2 = vertices[triangles[:, 2]] - p0
    det = e1[:, 0] * e2[:, 1] - e1[:, 1] * e2[:, 0]

    rows, cols, weights = [], [], []
    for start in range(0, len(points), chunk_size):
        chunk = points[start:start + chunk_size]
        d = chunk[:, None, :] - p0[None, :, :]  # (k, m, 2)
        b1 = (d[..., 0] * e2[:, 1] - d[..., 1] * e2[:, 0]) / det
        b2 = (e1[:, 0] * d[..., 1] - e1[:, 1] * d[..., 0]) / det
        b0 = 1.0 - b1 - b2
        inside = (b0 >= -tol) & (b1 >= -tol) & (b2 >= -tol)

        found = inside.any(axis=1)
        if not np.all(found):
            first = start + int(np.flatnonzero(~found)[0])
            raise StructuralError(
                f"{int((~found).sum())} points lie outside the mesh "
                f"(first: index {first}, location {points[first].tolist()})"
            )
        tri = inside.argmax(axis=1)
        k = np.arange(len(chunk))
        bary = np.column_stack([b0[k, tri], b1[k, tri], b2[k, tri]])
        bary = np.clip(bary, 0.0, None)
        bary /= bary.sum(axis=1, keepdims=True)

        rows.append(np.repeat(start + k, 3))
        cols.append(triangles[tri].ravel())
        weights.append(bary.ravel())

    A = sparse.coo_matrix(
        (np.concatenate(weights), (np.concatenate(rows), np.concatenate(cols))),
        shape=(len(points), len(vertices))
    ).tocsr()
    A.sum_duplicates()
    A.eliminate_zeros()
    return A
