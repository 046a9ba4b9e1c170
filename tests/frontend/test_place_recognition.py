import numpy as np
import pytest
import torch

from maptrack.frontend.frame import Frame
from maptrack.frontend.place_recognition import KeyframeDatabase, OrbVocabulary
from maptrack.mapping.map import Map


@pytest.fixture(scope="module")
def vocabulary():
    return OrbVocabulary.create(branching=4, depth=3, seed=0)


@pytest.fixture
def random_descriptors():
    generator = torch.Generator().manual_seed(1)
    return torch.randint(0, 256, (100, 32), dtype=torch.uint8, generator=generator)


def frame_like(keyframe, frame_id=100):
    """Frame with the same features as a keyframe."""
    return Frame(
        frame_id,
        0.0,
        keyframe.camera,
        list(keyframe.keypoints),
        keyframe.descriptors.clone(),
        geometry=keyframe.geometry,
    )


@pytest.fixture
def indexed_map(map_factory, vocabulary):
    database = KeyframeDatabase(vocabulary)
    map_ = map_factory(map_=Map(keyframe_database=database))
    for keyframe in map_.get_all_keyframes():
        keyframe.compute_bow(vocabulary)
        database.add(keyframe)
    return map_, database


# --- Vocabulary ---


def test_vocabulary_shape(vocabulary):
    assert vocabulary.num_words == 64
    assert vocabulary.num_nodes == 85
    assert vocabulary.first_leaf == 21


def test_invalid_vocabulary_shape():
    with pytest.raises(ValueError):
        OrbVocabulary(branching=1, depth=3)
    with pytest.raises(ValueError):
        OrbVocabulary(branching=4, depth=0)


def test_transform_is_l1_normalised(vocabulary, random_descriptors):
    bow, features = vocabulary.transform(random_descriptors)

    assert sum(bow.values()) == pytest.approx(1.0)
    assert all(0 <= word < vocabulary.num_words for word in bow)
    # Every feature appears once in the direct index
    indices = sorted(idx for group in features.values() for idx in group)
    assert indices == list(range(100))
    # Grouped two levels above the words
    assert all(1 <= node <= 4 for node in features)


def test_transform_of_no_descriptors(vocabulary):
    assert vocabulary.transform(torch.zeros((0, 32), dtype=torch.uint8)) == ({}, {})


def test_score(vocabulary, random_descriptors):
    bow, _ = vocabulary.transform(random_descriptors)
    assert OrbVocabulary.score(bow, bow) == pytest.approx(1.0)
    assert OrbVocabulary.score({1: 0.5, 2: 0.5}, {3: 1.0}) == 0.0
    assert OrbVocabulary.score({1: 0.5, 2: 0.5}, {2: 0.25, 3: 0.75}) == pytest.approx(0.25)


def test_save_and_load(vocabulary, random_descriptors, tmp_path):
    path = tmp_path / "vocabulary.npz"
    vocabulary.save(path)
    loaded = OrbVocabulary.load(path)

    assert loaded.branching == vocabulary.branching
    assert loaded.depth == vocabulary.depth
    assert torch.equal(loaded.centroids, vocabulary.centroids)
    assert torch.equal(
        loaded.words_of(random_descriptors), vocabulary.words_of(random_descriptors)
    )


def test_load_missing_vocabulary(tmp_path):
    with pytest.raises(FileNotFoundError):
        OrbVocabulary.load(tmp_path / "missing.npz")


def test_load_corrupt_vocabulary(tmp_path):
    path = tmp_path / "corrupt.npz"
    np.savez(path, centroids=np.zeros((3, 32), np.uint8), idf=np.ones(64), branching=4, depth=3)
    with pytest.raises(ValueError):
        OrbVocabulary.load(path)


def test_train():
    generator = torch.Generator().manual_seed(2)
    sets = [
        torch.randint(0, 256, (60, 32), dtype=torch.uint8, generator=generator)
        for _ in range(5)
    ]
    vocabulary = OrbVocabulary(branching=3, depth=2)
    vocabulary.train(sets, iterations=3, seed=0)

    words = vocabulary.words_of(sets[0])
    assert words.shape == (60,)
    assert int(words.min()) >= 0 and int(words.max()) < vocabulary.num_words
    assert torch.isfinite(vocabulary.idf).all()
    assert (vocabulary.idf >= 0).all()


def test_train_without_descriptors():
    with pytest.raises(ValueError):
        OrbVocabulary(branching=3, depth=2).train([torch.zeros((0, 32), dtype=torch.uint8)])


def test_from_config_builds_random_vocabulary():
    vocabulary = OrbVocabulary.from_config({"branching": 3, "depth": 2, "seed": 4})
    assert vocabulary.num_words == 9
    assert vocabulary.centroids.any()


# --- Keyframe database ---


def test_database_size_and_clear(indexed_map):
    _, database = indexed_map
    assert database.size() == 3
    database.clear()
    assert database.size() == 0


def test_relocalization_candidates_rank_the_matching_keyframe_first(indexed_map):
    map_, database = indexed_map
    frame = frame_like(map_.get_keyframe(1))

    candidates = database.detect_relocalization_candidates(frame)

    assert candidates
    assert candidates[0].id == 1
    assert frame.bow_vector


def test_empty_database_has_no_candidates(vocabulary, synthetic_map):
    database = KeyframeDatabase(vocabulary)
    frame = frame_like(synthetic_map.get_keyframe(1))
    assert database.detect_relocalization_candidates(frame) == []


def test_removed_keyframe_leaves_the_database(indexed_map):
    map_, database = indexed_map
    keyframe = map_.get_keyframe(1)
    keyframe.set_bad()

    assert database.size() == 2
    frame = frame_like(keyframe)
    assert all(kf.id != 1 for kf in database.detect_relocalization_candidates(frame))


def test_loop_candidates_exclude_connected_keyframes(indexed_map):
    map_, database = indexed_map
    keyframe = map_.get_keyframe(2)

    candidates = database.detect_loop_candidates(keyframe, 0.0)

    ids = {kf.id for kf in candidates}
    assert 2 not in ids
    assert not ids & keyframe.get_connected_keyframe_ids()
